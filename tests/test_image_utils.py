from hypothesis import given, strategies as st

from observer_core.image_utils import (
    clean_digest,
    format_digest_short,
    format_image_ref,
    normalize_repo_key,
    parse_image_ref,
    registry_url,
)


def test_parse_plain_name():
    ref = parse_image_ref('nginx')
    assert ref.registry is None
    assert ref.repository == 'nginx'
    assert ref.tag is None
    assert ref.digest is None


def test_parse_registry_and_tag():
    ref = parse_image_ref('ghcr.io/acme/app:1.2')
    assert ref.registry == 'ghcr.io'
    assert ref.repository == 'acme/app'
    assert ref.tag == '1.2'


def test_parse_tag_and_digest():
    ref = parse_image_ref('redis:7@sha256:deadbeef')
    assert ref.repository == 'redis'
    assert ref.tag == '7'
    assert ref.digest == 'sha256:deadbeef'


def test_registry_port_is_not_a_tag():
    ref = parse_image_ref('localhost:5000/app')
    assert ref.registry == 'localhost:5000'
    assert ref.repository == 'app'
    assert ref.tag is None

    ref = parse_image_ref('localhost:5000/team/app:2.0')
    assert ref.registry == 'localhost:5000'
    assert ref.repository == 'team/app'
    assert ref.tag == '2.0'


def test_namespace_without_dot_is_not_a_registry():
    ref = parse_image_ref('myorg/app:1.0')
    assert ref.registry is None
    assert ref.repository == 'myorg/app'


def test_parse_is_total():
    for raw in [':', '@', '/', 'a:', '@sha256:', '::::', 'UPPER/Case:Tag']:
        assert parse_image_ref(raw).repository
    assert parse_image_ref('').repository == ''
    assert parse_image_ref('   ').repository == ''
    assert parse_image_ref('  nginx:1  ').raw == 'nginx:1'
    assert parse_image_ref('nginx:').tag is None


def test_normalize_repo_key_defaults_registry_and_lowercases():
    assert normalize_repo_key(parse_image_ref('nginx')) == 'docker.io/nginx'
    assert normalize_repo_key(parse_image_ref('GHCR.io/Acme/App:1')) == 'ghcr.io/acme/app'
    assert normalize_repo_key(parse_image_ref('docker.io/nginx:1')) == 'docker.io/nginx'


def test_clean_and_short_digest():
    assert clean_digest('sha256:abc') == 'abc'
    assert clean_digest('abc') == 'abc'
    assert clean_digest(None) is None
    assert format_digest_short('sha256:0123456789abcdef') == '01234...bcdef'
    assert format_digest_short('sha256:short') == 'short'
    assert format_digest_short(None) == ''


def test_registry_url():
    assert registry_url(parse_image_ref('nginx')) == 'https://hub.docker.com/r/library/nginx'
    assert registry_url(parse_image_ref('myorg/app')) == 'https://hub.docker.com/r/myorg/app'
    assert registry_url(parse_image_ref('ghcr.io/acme/app')) == 'https://github.com/acme/app'
    assert registry_url(parse_image_ref('quay.io/acme/app')) == 'https://quay.io/acme/app'


_segment = st.from_regex(r'[a-z0-9]{1,8}', fullmatch=True)
_registry = st.one_of(
    st.none(),
    st.from_regex(r'[a-z0-9]{1,8}\.[a-z]{2,4}', fullmatch=True),
    st.from_regex(r'[a-z0-9]{1,8}:[0-9]{2,5}', fullmatch=True),
)
_tag = st.one_of(st.none(), st.from_regex(r'[A-Za-z0-9_][A-Za-z0-9_.-]{0,10}', fullmatch=True))
_digest = st.one_of(st.none(), st.from_regex(r'sha256:[0-9a-f]{6,64}', fullmatch=True))


@st.composite
def image_strings(draw):
    registry = draw(_registry)
    repository = '/'.join(draw(st.lists(_segment, min_size=1, max_size=3)))
    value = f"{registry}/{repository}" if registry else repository
    tag = draw(_tag)
    if tag:
        value += f":{tag}"
    digest = draw(_digest)
    if digest:
        value += f"@{digest}"
    return value


@given(image_strings())
def test_parse_format_roundtrip_is_idempotent(raw):
    ref = parse_image_ref(raw)
    assert parse_image_ref(format_image_ref(ref)) == ref
    assert normalize_repo_key(parse_image_ref(format_image_ref(ref))) == normalize_repo_key(ref)

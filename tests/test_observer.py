import json
import logging
from types import SimpleNamespace

import pytest
from docker.errors import APIError

import dock_observer
from dock_observer import DockObserver, format_record
from observer_core.docker_utils import RuntimeQueryError
from observer_core.models import ObserverConfig, RegistryCheckResult
from observer_core.state_utils import StateStore


class FakeResolver:
    def __init__(self, digests=None):
        self.digests = digests or {}
        self.calls = []

    def get_remote_digest(self, ref):
        self.calls.append(ref.repository)
        digest = self.digests.get(ref.repository)
        if digest is None:
            return RegistryCheckResult(error='registry 401')
        return RegistryCheckResult(remote_digest=digest)


def fake_docker(containers, images):
    return SimpleNamespace(api=SimpleNamespace(
        containers=lambda all=False: containers,
        images=lambda: images,
    ))


APP_CONTAINERS = [
    {'Id': 'c1', 'Names': ['/stack1-app-1'], 'Image': 'myorg/app:1.0', 'ImageID': 'img1', 'State': 'running'},
    {'Id': 'c2', 'Names': ['/cache'], 'Image': 'redis:7', 'ImageID': 'img2', 'State': 'running'},
]
APP_IMAGES = [
    {'Id': 'img1', 'RepoTags': ['myorg/app:1.0'], 'RepoDigests': ['myorg/app@sha256:aaa']},
    {'Id': 'img2', 'RepoTags': ['redis:7'], 'RepoDigests': ['redis@sha256:rrr']},
]


def make_observer(tmp_path, resolver=None, **config):
    stack_dir = tmp_path / 'stacks' / 'stack1'
    stack_dir.mkdir(parents=True)
    (stack_dir / 'docker-compose.yml').write_text(
        "services:\n"
        "  app:\n"
        "    image: myorg/app:1.0\n"
        "  worker:\n"
        "    image: myorg/worker:${WORKER_TAG:-2}\n"
    )
    o = DockObserver.__new__(DockObserver)
    o.logger = logging.getLogger('test')
    o.config = ObserverConfig(
        state_file=str(tmp_path / 'data' / 'db.json'),
        compose_mounts=[str(tmp_path / 'stacks')],
        **config,
    )
    o.init_metrics()
    o.init_components()
    o.docker_client = fake_docker(APP_CONTAINERS, APP_IMAGES)
    o.resolver = resolver or FakeResolver()
    return o


def by_service(records):
    return {r.service or r.repo: r for r in records}


def test_rebuild_builds_compose_and_socket_records(tmp_path):
    o = make_observer(tmp_path)
    records = by_service(o.rebuild_inventory())
    assert set(records) == {'app', 'worker', 'redis'}
    assert records['app'].status == 'running'
    assert records['app'].digest == 'sha256:aaa'
    assert records['app'].stack == 'stack1'
    assert records['worker'].tag == '2'
    assert records['worker'].status == 'unknown'
    assert records['redis'].source == 'socket'
    assert o.store.get().last_refresh is not None


def test_check_batch_then_rebuild_keeps_results(tmp_path):
    resolver = FakeResolver({'myorg/app': 'sha256:bbb', 'redis': 'sha256:rrr'})
    o = make_observer(tmp_path, resolver=resolver, update_batch_size=5)
    o.rebuild_inventory()

    records = by_service(o.check_batch())
    assert records['app'].update_available is True
    assert records['app'].update_message == 'digest changed'
    assert records['redis'].update_available is False
    assert records['worker'].update_available is None
    assert records['worker'].update_message == 'registry 401'
    assert all(r.last_update_check is not None for r in records.values())

    rebuilt = by_service(o.rebuild_inventory())
    assert rebuilt['app'].update_available is True
    assert rebuilt['app'].last_update_check == records['app'].last_update_check

    reloaded = StateStore(o.config.state_file, o.logger).load()
    assert by_service(reloaded.records)['app'].update_message == 'digest changed'


def test_check_batch_respects_limit_and_staleness(tmp_path):
    resolver = FakeResolver({'myorg/app': 'sha256:aaa'})
    o = make_observer(tmp_path, resolver=resolver)
    o.rebuild_inventory()
    o.check_batch(limit=1)
    o.check_batch(limit=1)
    assert resolver.calls == ['myorg/app', 'myorg/worker']
    assert o.check_batch(limit=0) == o.records()


def test_check_by_stack_and_ids(tmp_path):
    resolver = FakeResolver({'myorg/app': 'sha256:aaa', 'redis': 'sha256:new'})
    o = make_observer(tmp_path, resolver=resolver)
    o.rebuild_inventory()

    o.check_by_stack('stack1')
    assert sorted(resolver.calls) == ['myorg/app', 'myorg/worker']

    redis_id = by_service(o.records())['redis'].id
    records = by_service(o.check_by_ids([redis_id, 'no-such-id']))
    assert resolver.calls[-1] == 'redis'
    assert records['redis'].update_available is True
    assert records['app'].update_message == 'up to date'


def test_update_transition_sends_webhook(tmp_path, monkeypatch):
    sent = []
    monkeypatch.setenv('WEBHOOK_URL', 'http://hooks.local/notify')

    def fake_post(url, json=None, timeout=None):
        sent.append(json)
        return SimpleNamespace(status_code=204)

    monkeypatch.setattr('observer_core.notify_utils.requests.post', fake_post)
    o = make_observer(tmp_path, resolver=FakeResolver({'myorg/app': 'sha256:bbb'}))
    o.rebuild_inventory()
    o.check_batch()
    o.check_batch()
    assert len(sent) == 1
    assert sent[0]['event'] == 'update_available'
    assert sent[0]['service'] == 'app'


def test_failed_rebuild_leaves_state_untouched(tmp_path):
    o = make_observer(tmp_path)
    before = o.rebuild_inventory()

    def broken(all=False):
        raise APIError('socket closed')

    o.docker_client = SimpleNamespace(api=SimpleNamespace(containers=broken, images=lambda: []))
    with pytest.raises(RuntimeQueryError):
        o.rebuild_inventory()
    assert o.records() == before


def test_parallel_policy_checks_everything(tmp_path):
    resolver = FakeResolver({'myorg/app': 'sha256:aaa', 'myorg/worker': 'sha256:w', 'redis': 'sha256:rrr'})
    o = make_observer(tmp_path, resolver=resolver, check_policy='parallel', max_workers=3, max_per_host=1)
    assert o.policy.name == 'parallel'
    o.rebuild_inventory()
    records = o.check_batch()
    assert sorted(resolver.calls) == ['myorg/app', 'myorg/worker', 'redis']
    assert by_service(records)['worker'].update_message == 'local digest missing'


def test_format_record(tmp_path):
    o = make_observer(tmp_path)
    line = format_record(by_service(o.rebuild_inventory())['app'])
    assert 'stack1/app' in line
    assert 'myorg/app:1.0' in line
    assert 'https://hub.docker.com/r/myorg/app' in line


def test_main_lists_stored_records_as_json(tmp_path, monkeypatch, capsys):
    for name in ('DATA_DIR', 'STATE_FILE', 'STATE_BACKUP_DIR', 'COMPOSE_MOUNTS', 'METRICS_PORT'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('LOG_DIR', str(tmp_path / 'logs'))
    monkeypatch.setenv('LOG_LEVEL', 'ERROR')
    o = make_observer(tmp_path)
    o.rebuild_inventory()

    config_file = tmp_path / 'config.json'
    config_file.write_text(json.dumps({'state_file': o.config.state_file}))
    with pytest.raises(SystemExit) as exc:
        dock_observer.main(['--config', str(config_file), 'list', '--json'])
    assert exc.value.code == 0
    printed = json.loads(capsys.readouterr().out)
    assert {r['service'] for r in printed} == {'app', 'worker', None}
    assert all('lastUpdateCheck' in r for r in printed)


def test_stop_cancels_the_batch_but_not_later_checks(tmp_path):
    resolver = FakeResolver({'myorg/app': 'sha256:aaa', 'myorg/worker': 'sha256:w', 'redis': 'sha256:rrr'})
    o = make_observer(tmp_path, resolver=resolver)
    o.rebuild_inventory()

    def stopping_check(ref):
        o.stop()
        return FakeResolver.get_remote_digest(resolver, ref)

    o.resolver = SimpleNamespace(get_remote_digest=stopping_check)
    o.check_batch()
    assert resolver.calls == ['myorg/app']

    o.resolver = resolver
    records = by_service(o.check_batch())
    assert resolver.calls == ['myorg/app', 'myorg/worker', 'redis', 'myorg/app']
    assert records['redis'].update_message == 'up to date'


def test_stop_before_run_ends_the_loop(tmp_path):
    o = make_observer(tmp_path)
    o.stop()
    o.run()
    assert o.records() == []

import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import boto3
import requests
from google.auth import default
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from observer_core.image_utils import DEFAULT_REGISTRY, is_default_registry
from observer_core.models import ImageReference, RegistryCheckResult


DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_AUTH_URL = "https://auth.docker.io/token"
DOCKER_HUB_SERVICE = "registry.docker.io"
DEFAULT_TAG = "latest"
MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_ACCEPT_HEADER = ",".join([
    MANIFEST_V2,
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
])
GCR_SCOPES = ['https://www.googleapis.com/auth/cloud-platform']

REGISTRY_DOCKER_HUB = "docker_hub"
REGISTRY_BEARER = "bearer"
REGISTRY_ECR = "ecr"
REGISTRY_GCR = "gcr"
REGISTRY_NONE = "none"
REGISTRY_TYPES = (REGISTRY_DOCKER_HUB, REGISTRY_BEARER, REGISTRY_ECR, REGISTRY_GCR, REGISTRY_NONE)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryAuthError(Exception):
    """Token acquisition failed; terminal for the current check."""


def detect_registry_type(registry: Optional[str]) -> str:
    """Infer the auth flavour of a registry host."""
    if is_default_registry(registry):
        return REGISTRY_DOCKER_HUB
    host = registry.lower()
    if host.endswith('.amazonaws.com'):
        return REGISTRY_ECR
    if host == 'gcr.io' or host.endswith('.gcr.io') or host.endswith('-docker.pkg.dev'):
        return REGISTRY_GCR
    return REGISTRY_BEARER


def ensure_docker_hub_repo(repository: str) -> str:
    """Official images live under ``library/`` on the default registry."""
    if '/' in repository:
        return repository
    return f"library/{repository}"


def parse_auth_challenge(header: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse a ``WWW-Authenticate: Bearer realm=...,service=...`` header."""
    if not header or not header.strip().lower().startswith('bearer'):
        return None
    params = dict(_CHALLENGE_PARAM.findall(header))
    if not params.get('realm'):
        return None
    return params


def _to_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def build_session(retries: int = 2) -> requests.Session:
    session = requests.Session()
    retry = Retry(total=retries, connect=retries, read=1, status=0, backoff_factor=0.5)
    adapter = HTTPAdapter(max_retries=retry)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    return session


class RegistryResolver:
    """Resolve the digest a remote registry currently publishes for a tag.

    This is the only place that talks to third-party registries. Each
    registry type adds its own Authorization header; the manifest HEAD
    request itself is shared.
    """

    def __init__(
        self,
        logger,
        registries: Optional[Dict[str, Dict[str, Any]]] = None,
        timeout: int = 10,
        rate_limit_cooldown_sec: int = 3600,
        session: Optional[requests.Session] = None,
    ):
        self.logger = logger
        self.registries = {k.lower(): v for k, v in (registries or {}).items()}
        self.timeout = timeout
        self.rate_limit_cooldown_sec = rate_limit_cooldown_sec
        self.session = session or build_session()
        self._lock = threading.Lock()
        self._rate_limited_until: Dict[str, float] = {}
        # { region: {token, expires} }
        self._ecr_auth_cache: Dict[str, Dict[str, Any]] = {}
        self._gcr_credentials = None
        self._gcr_lock = threading.Lock()

    def registry_settings(self, registry: str) -> Dict[str, Any]:
        settings = self.registries.get(registry.lower())
        if settings is None and is_default_registry(registry):
            for alias in (DEFAULT_REGISTRY, DOCKER_HUB_REGISTRY, 'index.docker.io'):
                if alias in self.registries:
                    return self.registries[alias]
        return settings or {}

    def registry_type(self, registry: str) -> str:
        configured = self.registry_settings(registry).get('type')
        if configured in REGISTRY_TYPES:
            return configured
        return detect_registry_type(registry)

    def is_rate_limited(self, host: str) -> bool:
        with self._lock:
            until = self._rate_limited_until.get(host)
            if until is None:
                return False
            if time.monotonic() >= until:
                del self._rate_limited_until[host]
                return False
            return True

    def _mark_rate_limited(self, host: str) -> None:
        with self._lock:
            self._rate_limited_until[host] = time.monotonic() + self.rate_limit_cooldown_sec
        self.logger.warning(f"Registry {host} rate limited; pausing checks for {self.rate_limit_cooldown_sec}s")

    def manifest_host(self, ref: ImageReference) -> str:
        registry = ref.registry or DEFAULT_REGISTRY
        if self.registry_type(registry) == REGISTRY_DOCKER_HUB:
            return DOCKER_HUB_REGISTRY
        return registry.lower()

    def _docker_hub_token(self, repo: str, settings: Dict[str, Any]) -> str:
        params = {'service': DOCKER_HUB_SERVICE, 'scope': f"repository:{repo}:pull"}
        auth = None
        if settings.get('username') and settings.get('password'):
            auth = (settings['username'], settings['password'])
        resp = self.session.get(DOCKER_HUB_AUTH_URL, params=params, auth=auth, timeout=self.timeout)
        if not 200 <= resp.status_code < 300:
            raise RegistryAuthError(f"auth {resp.status_code}")
        data = resp.json() or {}
        token = data.get('token') or data.get('access_token')
        if not token:
            raise RegistryAuthError("missing token")
        return token

    def _challenge_token(self, challenge: Dict[str, str], settings: Dict[str, Any]) -> str:
        params = {k: v for k, v in challenge.items() if k in ('service', 'scope')}
        auth = None
        if settings.get('username') and settings.get('password'):
            auth = (settings['username'], settings['password'])
        resp = self.session.get(challenge['realm'], params=params, auth=auth, timeout=self.timeout)
        if not 200 <= resp.status_code < 300:
            raise RegistryAuthError(f"auth {resp.status_code}")
        data = resp.json() or {}
        token = data.get('token') or data.get('access_token')
        if not token:
            raise RegistryAuthError("missing token")
        return token

    def _ecr_token(self, registry: str, settings: Dict[str, Any]) -> str:
        region = settings.get('region')
        if not region:
            # <account>.dkr.ecr.<region>.amazonaws.com
            parts = registry.split('.')
            region = parts[3] if len(parts) > 3 else 'us-east-1'
        now = datetime.now(timezone.utc)
        with self._lock:
            cached = self._ecr_auth_cache.get(region)
        if cached and now < cached['expires'] - timedelta(minutes=5):
            return cached['token']

        if settings.get('aws_access_key_id') and settings.get('aws_secret_access_key'):
            ecr_client = boto3.client(
                'ecr',
                region_name=region,
                aws_access_key_id=settings['aws_access_key_id'],
                aws_secret_access_key=settings['aws_secret_access_key'],
            )
        else:
            ecr_client = boto3.client('ecr', region_name=region)
        response = ecr_client.get_authorization_token()
        data = (response.get('authorizationData') or [{}])[0]
        token = data.get('authorizationToken')
        if not token:
            raise RegistryAuthError("missing token")
        expires = _to_aware_utc(data.get('expiresAt')) or (now + timedelta(hours=12))
        with self._lock:
            self._ecr_auth_cache[region] = {'token': token, 'expires': expires}
        self.logger.info(f"Obtained ECR token for region {region}")
        return token

    def _gcr_token(self, settings: Dict[str, Any]) -> str:
        # Guards credentials only; refresh blocks on the network
        with self._gcr_lock:
            credentials = self._gcr_credentials
            if credentials is None:
                path = settings.get('service_account_path')
                if path:
                    credentials = service_account.Credentials.from_service_account_file(path, scopes=GCR_SCOPES)
                else:
                    credentials, _ = default(scopes=GCR_SCOPES)
                self._gcr_credentials = credentials
            if not credentials.valid:
                credentials.refresh(Request())
            token = credentials.token
        if not token:
            raise RegistryAuthError("missing token")
        return token

    def _auth_headers(self, kind: str, registry: str, repo: str, settings: Dict[str, Any]) -> Dict[str, str]:
        if kind == REGISTRY_DOCKER_HUB:
            return {'Authorization': f"Bearer {self._docker_hub_token(repo, settings)}"}
        if kind == REGISTRY_ECR:
            return {'Authorization': f"Basic {self._ecr_token(registry, settings)}"}
        if kind == REGISTRY_GCR:
            return {'Authorization': f"Bearer {self._gcr_token(settings)}"}
        return {}

    def _fetch_remote_digest(self, ref: ImageReference) -> RegistryCheckResult:
        registry = ref.registry or DEFAULT_REGISTRY
        tag = ref.tag or DEFAULT_TAG
        settings = self.registry_settings(registry)
        kind = self.registry_type(registry)
        host = self.manifest_host(ref)
        repo = ensure_docker_hub_repo(ref.repository) if kind == REGISTRY_DOCKER_HUB else ref.repository

        if self.is_rate_limited(host):
            return RegistryCheckResult(error="registry rate limited")

        headers = {'Accept': MANIFEST_ACCEPT_HEADER}
        headers.update(self._auth_headers(kind, registry, repo, settings))

        scheme = 'http' if settings.get('insecure') else 'https'
        url = f"{scheme}://{host}/v2/{repo}/manifests/{tag}"
        resp = self.session.head(url, headers=headers, timeout=self.timeout, allow_redirects=True)

        if resp.status_code == 401 and kind == REGISTRY_BEARER:
            challenge = parse_auth_challenge(resp.headers.get('WWW-Authenticate'))
            if challenge:
                headers = {**headers, 'Authorization': f"Bearer {self._challenge_token(challenge, settings)}"}
                resp = self.session.head(url, headers=headers, timeout=self.timeout, allow_redirects=True)

        if resp.status_code == 429:
            self._mark_rate_limited(host)
        if not 200 <= resp.status_code < 300:
            return RegistryCheckResult(error=f"registry {resp.status_code}")
        digest = resp.headers.get('Docker-Content-Digest')
        if not digest:
            return RegistryCheckResult(error="missing digest")
        return RegistryCheckResult(remote_digest=digest)

    def get_remote_digest(self, ref: ImageReference) -> RegistryCheckResult:
        """Never raises: every failure is reported in ``error`` with a null digest."""
        try:
            return self._fetch_remote_digest(ref)
        except Exception as e:
            self.logger.debug(f"Registry lookup failed for {ref.raw}: {e}")
            return RegistryCheckResult(error=str(e) or e.__class__.__name__)

from __future__ import annotations

import base64
import logging
import re
import threading
import time
from typing import Mapping
from urllib.parse import urljoin, urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .errors import AuthError, NetworkError, NotFound, RegistryError
from .imageref import ImageRef, RegistryKind


log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
PAGE_SIZE = 1000
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')
_ECR_REGION_RE = re.compile(r"^\d+\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com$")


class RegistryCredentials(BaseModel):
    """Credentials for one registry kind. Which fields apply depends on the kind."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    username: str | None = None
    password: str | None = None
    token: str | None = None
    credentials_file: str | None = None
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    registry: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    region: str | None = None
    url: str | None = None


def _read_file(path: str) -> str:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read().strip()
    except OSError as e:
        raise AuthError(f"cannot read credentials file {path}: {e}") from e


def basic_credentials(kind: RegistryKind, creds: RegistryCredentials | None) -> tuple[str, str] | None:
    """Username/password pair a registry of `kind` accepts for `creds` (ECR excluded)."""
    if creds is None:
        return None
    if kind == RegistryKind.GHCR:
        secret = creds.token or creds.password
        return (creds.username or "token", secret) if secret else None
    if kind == RegistryKind.GCR:
        if creds.credentials_file:
            return "_json_key", _read_file(creds.credentials_file)
        if creds.token:
            return "oauth2accesstoken", creds.token
        return None
    if kind == RegistryKind.ACR:
        if creds.client_id and creds.client_secret:
            return creds.client_id, creds.client_secret
    elif kind == RegistryKind.DOCR:
        if creds.token:
            return creds.token, creds.token
    elif kind == RegistryKind.QUAY:
        if creds.token:
            return "$oauthtoken", creds.token
    elif kind == RegistryKind.DOCKERHUB:
        secret = creds.password or creds.token
        if creds.username and secret:
            return creds.username, secret
        return None
    if creds.username and creds.password:
        return creds.username, creds.password
    return None


def _parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    scheme, _, rest = header.partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


class RegistryClient:
    """Lists tags through the Docker Registry HTTP API v2.

    Handles the bearer-token dance (401 + WWW-Authenticate), basic auth,
    `Link` pagination, and ECR tokens obtained through boto3.
    """

    def __init__(
        self,
        credentials: Mapping[RegistryKind, RegistryCredentials] | None = None,
        timeout: float = REQUEST_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.credentials = dict(credentials or {})
        self.timeout = timeout
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        self._tokens: dict[tuple[str, str], str] = {}
        self._ecr: dict[str, tuple[tuple[str, str], float]] = {}

    def base_url(self, ref: ImageRef) -> str:
        host = ref.registry_host
        creds = self.credentials.get(ref.kind)
        if creds and creds.url:
            parsed = urlparse(creds.url if "://" in creds.url else f"https://{creds.url}")
            if parsed.netloc == host:
                return f"{parsed.scheme}://{host}"
        if host.startswith(("localhost", "127.0.0.1")):
            return f"http://{host}"
        return f"https://{host}"

    def _ecr_credentials(self, ref: ImageRef, creds: RegistryCredentials | None) -> tuple[str, str]:
        host = ref.registry_host
        with self._lock:
            cached = self._ecr.get(host)
        if cached and cached[1] > time.time() + 60:
            return cached[0]

        m = _ECR_REGION_RE.match(host)
        region = (creds.region if creds else None) or (m.group(1) if m else None)
        kwargs: dict[str, str] = {}
        if region:
            kwargs["region_name"] = region
        if creds and creds.access_key_id and creds.secret_access_key:
            kwargs["aws_access_key_id"] = creds.access_key_id
            kwargs["aws_secret_access_key"] = creds.secret_access_key
        try:
            data = boto3.client("ecr", **kwargs).get_authorization_token()["authorizationData"][0]
        except (BotoCoreError, ClientError) as e:
            raise AuthError(f"ECR authorization failed: {e}", registry=host, repository=ref.repository) from e

        user, _, password = base64.b64decode(data["authorizationToken"]).decode("utf-8").partition(":")
        expires = data.get("expiresAt")
        expires_ts = expires.timestamp() if expires is not None else time.time() + 3600
        with self._lock:
            self._ecr[host] = ((user, password), expires_ts)
        return user, password

    def _basic(self, ref: ImageRef) -> tuple[str, str] | None:
        creds = self.credentials.get(ref.kind)
        if ref.kind == RegistryKind.ECR:
            return self._ecr_credentials(ref, creds)
        return basic_credentials(ref.kind, creds)

    def _fetch_token(self, ref: ImageRef, params: dict[str, str], basic: tuple[str, str] | None) -> str:
        realm = params.get("realm")
        if not realm:
            raise AuthError("bearer challenge without realm", registry=ref.registry_host, repository=ref.repository)
        query = {k: v for k, v in params.items() if k in {"service", "scope"}}
        query.setdefault("scope", f"repository:{ref.repository}:pull")
        try:
            resp = self.session.get(realm, params=query, auth=basic, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"token request to {realm} failed: {e}", registry=ref.registry_host, repository=ref.repository) from e
        if resp.status_code in (401, 403):
            raise AuthError(f"token request rejected (HTTP {resp.status_code})", registry=ref.registry_host, repository=ref.repository)
        if not resp.ok:
            raise RegistryError(f"token request failed (HTTP {resp.status_code})", registry=ref.registry_host, repository=ref.repository)
        try:
            body = resp.json()
        except ValueError as e:
            raise AuthError(f"token response from {realm} is not JSON", registry=ref.registry_host, repository=ref.repository) from e
        token = (body.get("token") or body.get("access_token")) if isinstance(body, dict) else None
        if not token:
            raise AuthError("token response carried no token", registry=ref.registry_host, repository=ref.repository)
        return token

    def _get(self, ref: ImageRef, url: str) -> requests.Response:
        key = (ref.registry_host, ref.repository)
        headers = {"Accept": "application/json"}
        with self._lock:
            token = self._tokens.get(key)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
            if resp.status_code == 401:
                scheme, params = _parse_challenge(resp.headers.get("WWW-Authenticate", ""))
                basic = self._basic(ref)
                if scheme == "bearer":
                    token = self._fetch_token(ref, params, basic)
                    with self._lock:
                        self._tokens[key] = token
                    headers["Authorization"] = f"Bearer {token}"
                    resp = self.session.get(url, headers=headers, timeout=self.timeout)
                elif scheme == "basic" and basic:
                    headers.pop("Authorization", None)
                    resp = self.session.get(url, headers=headers, auth=basic, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"GET {url} failed: {e}", registry=ref.registry_host, repository=ref.repository) from e

        if resp.status_code in (401, 403):
            raise AuthError(f"access to {ref.repository} denied (HTTP {resp.status_code})", registry=ref.registry_host, repository=ref.repository)
        if resp.status_code == 404:
            raise NotFound(f"repository {ref.repository} not found on {ref.registry_host}", registry=ref.registry_host, repository=ref.repository)
        if not resp.ok:
            raise RegistryError(f"GET {url} failed (HTTP {resp.status_code})", registry=ref.registry_host, repository=ref.repository)
        return resp

    def list_tags(self, ref: ImageRef) -> list[str]:
        """All tags of `ref`'s repository, across every page."""
        base = self.base_url(ref)
        url: str | None = f"{base}/v2/{ref.repository}/tags/list?n={PAGE_SIZE}"
        tags: list[str] = []
        seen_pages: set[str] = set()
        while url and url not in seen_pages:
            seen_pages.add(url)
            resp = self._get(ref, url)
            try:
                body = resp.json()
            except ValueError as e:
                raise RegistryError(f"invalid JSON from {url}", registry=ref.registry_host, repository=ref.repository) from e
            if not isinstance(body, dict):
                raise RegistryError(f"unexpected tag list from {url}", registry=ref.registry_host, repository=ref.repository)
            tags.extend(body.get("tags") or [])
            nxt = resp.links.get("next", {}).get("url")
            url = urljoin(base, nxt) if nxt else None
        log.debug("[%s] registry: %d tag(s) from %s", ref.repository, len(tags), ref.registry_host)
        return tags

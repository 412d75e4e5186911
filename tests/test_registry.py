import pytest

from dosync.errors import AuthError, NotFound, RegistryError
from dosync.imageref import RegistryKind, parse_image_ref
from dosync.registry import RegistryClient, RegistryCredentials, basic_credentials


class FakeResponse:
    def __init__(self, status=200, body=None, headers=None, links=None):
        self.status_code = status
        self._body = body if body is not None else {}
        self.headers = headers or {}
        self.links = links or {}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    """Answers GETs from a list of (predicate, response) rules, first match wins."""

    def __init__(self, rules):
        self.rules = rules
        self.requests = []

    def get(self, url, headers=None, params=None, auth=None, timeout=None):
        self.requests.append({"url": url, "headers": dict(headers or {}), "params": params, "auth": auth})
        for predicate, response in self.rules:
            if predicate(url, headers or {}):
                return response
        return FakeResponse(404)


def test_bearer_challenge_and_pagination():
    challenge = {"WWW-Authenticate": 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:acme/web:pull"'}
    session = FakeSession(
        [
            (lambda u, h: u.startswith("https://ghcr.io/token"), FakeResponse(body={"token": "abc"})),
            (lambda u, h: "Authorization" not in h, FakeResponse(401, headers=challenge)),
            (lambda u, h: "last=1.1.0" in u, FakeResponse(body={"tags": ["1.2.0"]})),
            (
                lambda u, h: u.endswith("tags/list?n=1000"),
                FakeResponse(body={"tags": ["1.0.0", "1.1.0"]}, links={"next": {"url": "/v2/acme/web/tags/list?n=1000&last=1.1.0"}}),
            ),
        ]
    )
    creds = {RegistryKind.GHCR: RegistryCredentials(token="pat")}
    client = RegistryClient(creds, session=session)
    tags = client.list_tags(parse_image_ref("ghcr.io/acme/web:1.0.0"))

    assert tags == ["1.0.0", "1.1.0", "1.2.0"]
    token_req = next(r for r in session.requests if r["url"] == "https://ghcr.io/token")
    assert token_req["auth"] == ("token", "pat")
    assert token_req["params"]["scope"] == "repository:acme/web:pull"
    assert session.requests[-1]["url"] == "https://ghcr.io/v2/acme/web/tags/list?n=1000&last=1.1.0"
    assert session.requests[-1]["headers"]["Authorization"] == "Bearer abc"


def test_docker_hub_library_prefix():
    session = FakeSession([(lambda u, h: True, FakeResponse(body={"tags": ["1.25"]}))])
    client = RegistryClient(session=session)
    assert client.list_tags(parse_image_ref("nginx:1.24")) == ["1.25"]
    assert session.requests[0]["url"] == "https://registry-1.docker.io/v2/library/nginx/tags/list?n=1000"


def test_basic_challenge_uses_credentials():
    session = FakeSession(
        [
            (lambda u, h: True, FakeResponse(401, headers={"WWW-Authenticate": 'Basic realm="Registry"'})),
        ]
    )
    creds = {RegistryKind.CUSTOM: RegistryCredentials(username="u", password="p")}
    client = RegistryClient(creds, session=session)
    with pytest.raises(AuthError):
        client.list_tags(parse_image_ref("registry.example.com/app:1"))
    assert session.requests[-1]["auth"] == ("u", "p")


def test_error_mapping():
    ref = parse_image_ref("localhost:5000/app:1")
    client = RegistryClient(session=FakeSession([]))
    with pytest.raises(NotFound) as exc:
        client.list_tags(ref)
    assert exc.value.registry == "localhost:5000"
    assert exc.value.repository == "app"
    assert client.base_url(ref) == "http://localhost:5000"

    broken = RegistryClient(session=FakeSession([(lambda u, h: True, FakeResponse(500))]))
    with pytest.raises(RegistryError):
        broken.list_tags(ref)

    garbled = RegistryClient(session=FakeSession([(lambda u, h: True, FakeResponse(body=ValueError("bad json")))]))
    with pytest.raises(RegistryError):
        garbled.list_tags(ref)

    not_a_mapping = RegistryClient(session=FakeSession([(lambda u, h: True, FakeResponse(body=["1.0"]))]))
    with pytest.raises(RegistryError, match="unexpected tag list"):
        not_a_mapping.list_tags(ref)


@pytest.mark.parametrize("token_body", [ValueError("<html>"), ["abc"], {"expires_in": 300}])
def test_unusable_token_response_is_an_auth_error(token_body):
    challenge = {"WWW-Authenticate": 'Bearer realm="https://ghcr.io/token",service="ghcr.io"'}
    session = FakeSession(
        [
            (lambda u, h: u.startswith("https://ghcr.io/token"), FakeResponse(body=token_body)),
            (lambda u, h: True, FakeResponse(401, headers=challenge)),
        ]
    )
    client = RegistryClient(session=session)
    with pytest.raises(AuthError) as exc:
        client.list_tags(parse_image_ref("ghcr.io/acme/web:1.0.0"))
    assert exc.value.repository == "acme/web"


@pytest.mark.parametrize(
    "kind, creds, expected",
    [
        (RegistryKind.GHCR, RegistryCredentials(token="t"), ("token", "t")),
        (RegistryKind.GCR, RegistryCredentials(token="t"), ("oauth2accesstoken", "t")),
        (RegistryKind.ACR, RegistryCredentials(clientId="id", clientSecret="s"), ("id", "s")),
        (RegistryKind.DOCR, RegistryCredentials(token="t"), ("t", "t")),
        (RegistryKind.QUAY, RegistryCredentials(token="t"), ("$oauthtoken", "t")),
        (RegistryKind.DOCKERHUB, RegistryCredentials(username="u", token="t"), ("u", "t")),
        (RegistryKind.HARBOR, RegistryCredentials(username="u", password="p"), ("u", "p")),
        (RegistryKind.DOCKERHUB, RegistryCredentials(), None),
        (RegistryKind.CUSTOM, None, None),
    ],
)
def test_basic_credentials(kind, creds, expected):
    assert basic_credentials(kind, creds) == expected


def test_gcr_key_file(tmp_path):
    key = tmp_path / "key.json"
    key.write_text('{"type": "service_account"}\n', encoding="utf-8")
    assert basic_credentials(RegistryKind.GCR, RegistryCredentials(credentialsFile=str(key))) == (
        "_json_key",
        '{"type": "service_account"}',
    )
    with pytest.raises(AuthError):
        basic_credentials(RegistryKind.GCR, RegistryCredentials(credentialsFile=str(tmp_path / "nope.json")))

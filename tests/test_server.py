from typing import List

import pytest

import server
from settings import Settings

BASIC_ENV = {
    "CALDAV_SERVER_URL": "https://dav.example.com/",
    "CALDAV_USERNAME": "alice",
    "CALDAV_PASSWORD": "s3cret",
}


@pytest.fixture()
def env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AUTH_METHOD", "BEARER_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    # main() writes overrides straight into os.environ
    monkeypatch.setenv("PORT", "3000")
    monkeypatch.setenv("HOST", "::")
    for name, value in BASIC_ENV.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setattr(server, "configure_logging", lambda level="INFO": None)


def test_parse_args() -> None:
    args = server.parse_args(["--http", "--port", "8080", "--host=0.0.0.0"])
    assert args.http and args.port == "8080" and args.host == "0.0.0.0"
    assert not server.parse_args([]).http


def test_http_mode_applies_overrides(env, monkeypatch: pytest.MonkeyPatch) -> None:
    served: List[Settings] = []

    async def fake_serve_http(settings: Settings) -> None:
        served.append(settings)

    monkeypatch.setattr(server, "serve_http", fake_serve_http)
    assert server.main(["--http", "--port=8080", "--host", "127.0.0.1"]) == 0
    (settings,) = served
    assert settings.port == 8080
    assert settings.host == "127.0.0.1"


def test_stdio_is_the_default(env, monkeypatch: pytest.MonkeyPatch) -> None:
    bindings = []

    class FakeBinding:
        def __init__(self, settings: Settings) -> None:
            bindings.append(settings)

        def run(self) -> int:
            return 0

    monkeypatch.setattr(server, "StdioBinding", FakeBinding)
    assert server.main(["--port", "9999"]) == 0
    assert bindings[0].port == 3000


def test_invalid_configuration_exits_with_error(env, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_METHOD", "Kerberos")
    assert server.main([]) == 1

import json

import httpx
import pytest

from chat_core.domain.exceptions import ApiError, NetworkError, TransportError
from chat_core.domain.models import Attachment, ChatMessage, PullProgress
from chat_core.transport.cancellation import CancelToken
from chat_core.transport.ollama_client import OllamaClient

BASE = "http://localhost:11434"


class SettingsStub:
    http_timeout = 1.0
    stream_read_timeout = None


def chat_line(text, done=False):
    return (json.dumps({"message": {"role": "assistant", "content": text}, "done": done}) + "\n").encode()


class FakeResponse:
    reason_phrase = "Internal Server Error"

    def __init__(self, chunks, status_code=200, body=b""):
        self._chunks = list(chunks)
        self.status_code = status_code
        self._body = body
        self.closed = False
        self.consumed = 0

    def iter_bytes(self):
        for chunk in self._chunks:
            if self.closed:
                raise httpx.StreamClosed()
            self.consumed += 1
            yield chunk

    def read(self):
        return self._body

    @property
    def text(self):
        return self._body.decode()

    def json(self):
        return json.loads(self._body)

    def close(self):
        self.closed = True


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def install_client(monkeypatch, response=None, error=None, captured=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, json=None, **_):
            if captured is not None:
                captured.update(method=method, url=url, payload=json)
            if error is not None:
                raise error
            return StreamContext(response)

    monkeypatch.setattr("httpx.Client", Client)


def test_stream_chat_skips_malformed_lines(monkeypatch):
    chunks = [
        chat_line("Hel"),
        b"garbage line\n",
        b'{"message": {"content": "lo"}, "do',  # split across chunks
        b'ne": false}\n\n[1,2]\n',
        chat_line(", world"),
        chat_line("", done=True),
    ]
    captured = {}
    install_client(monkeypatch, FakeResponse(chunks), captured=captured)
    client = OllamaClient(SettingsStub())
    msgs = [ChatMessage(role="user", content="hi")]

    deltas = [d.text for d in client.stream_chat(BASE, "llama3", msgs)]

    assert "".join(deltas) == "Hello, world"
    assert captured["url"] == f"{BASE}/api/chat"
    assert captured["payload"] == {"model": "llama3", "messages": [{"role": "user", "content": "hi"}], "stream": True}


def test_stream_chat_stops_at_done(monkeypatch):
    resp = FakeResponse([chat_line("a"), chat_line("", done=True), chat_line("ignored")])
    install_client(monkeypatch, resp)
    deltas = [d.text for d in OllamaClient(SettingsStub()).stream_chat(BASE, "m", [])]
    assert deltas == ["a"]
    assert resp.consumed == 2


def test_stream_chat_flushes_unterminated_last_line(monkeypatch):
    install_client(monkeypatch, FakeResponse([chat_line("x"), b'{"message": {"content": "y"}, "done": false}']))
    deltas = [d.text for d in OllamaClient(SettingsStub()).stream_chat(BASE, "m", [])]
    assert deltas == ["x", "y"]


def test_stream_chat_error_status(monkeypatch):
    install_client(monkeypatch, FakeResponse([chat_line("never")], status_code=404, body=b'{"error": "model \\"m\\" not found"}'))
    opened = []
    with pytest.raises(ApiError) as exc:
        list(OllamaClient(SettingsStub()).stream_chat(BASE, "m", [], on_open=lambda: opened.append(True)))
    assert exc.value.http_status == 404
    assert "not found" in exc.value.message
    assert opened == []


def test_stream_chat_network_error(monkeypatch):
    install_client(monkeypatch, error=httpx.ConnectError("connection refused"))
    with pytest.raises(NetworkError) as exc:
        list(OllamaClient(SettingsStub()).stream_chat(BASE, "m", []))
    assert isinstance(exc.value, TransportError)


def test_stream_chat_server_error_line(monkeypatch):
    install_client(monkeypatch, FakeResponse([chat_line("par"), b'{"error": "out of memory"}\n']))
    got = []
    with pytest.raises(ApiError) as exc:
        for d in OllamaClient(SettingsStub()).stream_chat(BASE, "m", []):
            got.append(d.text)
    assert got == ["par"]
    assert exc.value.message == "out of memory"


def test_stream_chat_cancel_mid_stream(monkeypatch):
    resp = FakeResponse([chat_line("Hel"), chat_line("lo"), chat_line(" there"), chat_line("", done=True)])
    install_client(monkeypatch, resp)
    token = CancelToken()
    got = []
    for d in OllamaClient(SettingsStub()).stream_chat(BASE, "m", [], cancel_token=token):
        got.append(d.text)
        if len(got) == 2:
            token.cancel()
    assert got == ["Hel", "lo"]
    assert resp.closed


def test_stream_chat_already_cancelled_sends_nothing(monkeypatch):
    captured = {}
    install_client(monkeypatch, FakeResponse([chat_line("a")]), captured=captured)
    token = CancelToken()
    token.cancel()
    assert list(OllamaClient(SettingsStub()).stream_chat(BASE, "m", [], cancel_token=token)) == []
    assert captured == {}


def test_attachments_are_described_not_read(monkeypatch):
    captured = {}
    install_client(monkeypatch, FakeResponse([chat_line("", done=True)]), captured=captured)
    att = Attachment(id="a1", name="notes.txt", mime_type="text/plain", size_bytes=2048, content="aGVsbG8=")
    list(OllamaClient(SettingsStub()).stream_chat(BASE, "m", [ChatMessage(role="user", content="see", attachments=[att])]))
    content = captured["payload"]["messages"][0]["content"]
    assert content == "see\n\n[File: notes.txt (text/plain, 2 KB)]"
    assert "aGVsbG8=" not in content


def test_pull_model_yields_progress(monkeypatch):
    lines = [
        b'{"status": "pulling manifest"}\n',
        b"oops\n",
        b'{"status": "downloading", "digest": "sha256:1", "total": 100, "completed": 50}\n',
        b'{"status": "success"}\n',
    ]
    captured = {}
    install_client(monkeypatch, FakeResponse(lines), captured=captured)
    progress = list(OllamaClient(SettingsStub()).pull_model(BASE, "llama3"))
    assert [p.status for p in progress] == ["pulling manifest", "downloading", "success"]
    assert progress[1] == PullProgress(status="downloading", digest="sha256:1", total=100, completed=50)
    assert captured["url"] == f"{BASE}/api/pull"
    assert captured["payload"] == {"name": "llama3", "stream": True}


def test_list_models_and_check_connection(monkeypatch):
    class Resp:
        status_code = 200
        content = b"{}"

        def json(self):
            return {"models": [{"name": "llama3:latest", "size": 42, "digest": "d", "modified_at": "t", "details": {"family": "llama"}}]}

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def request(self, method, url, json=None):
            assert (method, url) == ("GET", f"{BASE}/api/tags")
            return Resp()

        def get(self, url):
            raise httpx.ConnectError("down")

    monkeypatch.setattr("httpx.Client", Client)
    client = OllamaClient(SettingsStub())
    models = client.list_models(BASE)
    assert models[0].name == "llama3:latest"
    assert models[0].details["family"] == "llama"
    assert client.check_connection(BASE) is False


def test_pull_model_cancel_mid_stream(monkeypatch):
    lines = [
        b'{"status": "pulling manifest"}\n',
        b'{"status": "downloading", "digest": "sha256:1", "total": 100, "completed": 10}\n',
        b'{"status": "downloading", "digest": "sha256:1", "total": 100, "completed": 90}\n',
        b'{"status": "success"}\n',
    ]
    resp = FakeResponse(lines)
    install_client(monkeypatch, resp)
    token = CancelToken()
    got = []
    for p in OllamaClient(SettingsStub()).pull_model(BASE, "llama3", cancel_token=token):
        got.append(p.status)
        if len(got) == 2:
            token.cancel()
    assert got == ["pulling manifest", "downloading"]
    assert resp.closed


def install_request_client(monkeypatch, status_code=200, body=b"", captured=None):
    class Resp:
        reason_phrase = "Not Found"

        def __init__(self):
            self.status_code = status_code
            self.content = body

        @property
        def text(self):
            return body.decode()

        def json(self):
            return json.loads(body)

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def request(self, method, url, json=None):
            if captured is not None:
                captured.update(method=method, url=url, payload=json)
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)


def test_delete_model(monkeypatch):
    captured = {}
    install_request_client(monkeypatch, captured=captured)
    assert OllamaClient(SettingsStub()).delete_model(BASE, "llama3") is None
    assert captured == {"method": "DELETE", "url": f"{BASE}/api/delete", "payload": {"name": "llama3"}}


def test_delete_model_missing(monkeypatch):
    install_request_client(monkeypatch, status_code=404, body=b'{"error": "model \\"nope\\" not found"}')
    with pytest.raises(ApiError) as exc:
        OllamaClient(SettingsStub()).delete_model(BASE, "nope")
    assert exc.value.http_status == 404
    assert "not found" in exc.value.message

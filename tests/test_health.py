import urllib.error
import urllib.request

import pytest

import health
import notifier


@pytest.fixture
def liveness():
    return notifier.LivenessNotifier()


@pytest.fixture
def server(liveness):
    srv = health.start_health_server(liveness, 0, host="127.0.0.1")
    yield srv
    srv.shutdown()
    srv.server_close()


def get(server, path):
    url = f"http://127.0.0.1:{server.server_address[1]}{path}"
    try:
        with urllib.request.urlopen(url, timeout=5) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as e:
        return e.code, e.read()


def test_unhealthy_before_first_run(server):
    assert get(server, "/healthz") == (500, b"unhealthy")


def test_reflects_latest_outcome(server, liveness):
    liveness.send_success(None)
    assert get(server, "/healthz") == (200, b"ok")

    liveness.send_error("shop-db", "dump failed")
    assert get(server, "/healthz") == (500, b"unhealthy")


def test_unknown_path(server, liveness):
    liveness.send_success(None)
    assert get(server, "/health")[0] == 404


def test_multi_notifier_updates_liveness(liveness):
    multi = notifier.MultiNotifier([notifier.LogNotifier(), liveness])
    multi.send_error("a", "boom")
    assert liveness.healthy is False


def test_query_string_is_ignored(server, liveness):
    liveness.send_success(None)
    assert get(server, "/healthz?check=1") == (200, b"ok")


def test_head_request(server, liveness):
    url = f"http://127.0.0.1:{server.server_address[1]}/healthz"
    request = urllib.request.Request(url, method="HEAD")

    liveness.send_success(None)
    with urllib.request.urlopen(request, timeout=5) as resp:
        assert resp.status == 200
        assert resp.read() == b""

    liveness.send_error("shop-db", "dump failed")
    with pytest.raises(urllib.error.HTTPError) as exc:
        urllib.request.urlopen(request, timeout=5)
    assert exc.value.code == 500

from __future__ import annotations

import threading
import urllib.error
import urllib.request

from reconciler.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for the operator's liveness, readiness and bootstrap probes."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.bootstrapped = threading.Event()
        self.server = start_health_server(
            ready=self.ready, port=0, bootstrapped=self.bootstrapped
        )
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_caches_sync(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "synced=false"

    def test_readyz_follows_ready_event(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "synced=true"

        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_bootstrapz_reports_progress(self) -> None:
        status, body = _get(f"{self.base_url}/bootstrapz")
        assert status == 503
        assert body == "bootstrapped=false"

        self.bootstrapped.set()
        status, body = _get(f"{self.base_url}/bootstrapz")
        assert status == 200
        assert body == "bootstrapped=true"

    def test_metrics_exposes_operator_series(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "machine_api_operator_workqueue_depth" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


class TestHealthServerWithoutBootstrapEvent:
    """Without a bootstrap event the bootstrap probe never reports done."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_bootstrapz_returns_503(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/bootstrapz")
        assert status == 503
        assert body == "bootstrapped=false"

    def test_readyz_depends_only_on_ready_event(self) -> None:
        self.ready.set()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

"""
Error registry and error handler tests.
"""

import textwrap

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from meterproxy.core.errors import ErrorKind, MeterProxyError
from meterproxy.core.errors.middleware import meterproxy_error_handler
from meterproxy.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry


class TestMeterProxyError:
    def test_kind_from_code(self):
        assert MeterProxyError("MPX-UPS-001").kind is ErrorKind.UPSTREAM
        assert MeterProxyError("MPX-AUTH-002").kind is ErrorKind.AUTH

    def test_message_includes_detail(self):
        err = MeterProxyError("MPX-DB-001", detail="conflict", context={"attempts": 5})
        assert str(err) == "MPX-DB-001: conflict"
        assert err.context == {"attempts": 5}

    @pytest.mark.parametrize("code", ["UPS-001", "MPX-ups-001", "MPX-UPS-1", "ABC-UPS-001"])
    def test_invalid_code_rejected(self, code):
        with pytest.raises(ValueError):
            MeterProxyError(code)


class TestRegistry:
    def test_bundled_registry_loads(self):
        registry = ErrorRegistry()
        registry.load()
        assert registry.loaded
        assert len(registry) == 16
        assert registry.schema_version == 1

    def test_every_kind_has_codes(self):
        for kind in ErrorKind:
            assert error_registry.codes_for_kind(kind), kind

    def test_lookup(self):
        entry = error_registry.lookup("MPX-UPS-003")
        assert entry.http_status == 504
        assert entry.kind is ErrorKind.UPSTREAM
        with pytest.raises(KeyError):
            error_registry.lookup("MPX-UPS-999")

    def test_retryable_codes(self):
        retryable = [c for c in error_registry.all_codes() if error_registry.get(c).retryable]
        assert sorted(retryable) == ["MPX-DB-001", "MPX-UPS-001", "MPX-UPS-003"]

    def _write(self, tmp_path, body: str) -> str:
        path = tmp_path / "registry.yaml"
        path.write_text(textwrap.dedent(body))
        return str(path)

    def test_domain_mismatch(self, tmp_path):
        path = self._write(
            tmp_path,
            """
            schema_version: 1
            errors:
              - code: MPX-UPS-001
                domain: DB
                title: t
                severity: ERROR
                retryable: false
                http_status: 500
                safe_message: m
                remediation: []
            """,
        )
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(path)

    def test_missing_fields(self, tmp_path):
        path = self._write(
            tmp_path,
            """
            errors:
              - code: MPX-UPS-001
                domain: UPS
            """,
        )
        with pytest.raises(RegistryValidationError, match="missing fields"):
            ErrorRegistry().load(path)

    def test_duplicate_code(self, tmp_path):
        entry = """
              - code: MPX-API-001
                domain: API
                title: t
                severity: WARN
                retryable: false
                http_status: 400
                safe_message: m
                remediation: []
        """
        path = self._write(tmp_path, "errors:\n" + textwrap.dedent(entry) + textwrap.dedent(entry))
        with pytest.raises(RegistryValidationError, match="Duplicate"):
            ErrorRegistry().load(path)


class TestErrorHandler:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_exception_handler(MeterProxyError, meterproxy_error_handler)

        @app.get("/upstream")
        async def upstream():
            raise MeterProxyError("MPX-UPS-001", detail="venice returned 503 with secrets")

        @app.get("/unregistered")
        async def unregistered():
            raise MeterProxyError("MPX-API-999")

        return TestClient(app)

    def test_registered_code(self, client):
        resp = client.get("/upstream")
        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["code"] == "MPX-UPS-001"
        assert error["kind"] == "upstream"
        assert error["retryable"] is True
        assert "secrets" not in error["message"]

    def test_unregistered_code(self, client):
        resp = client.get("/unregistered")
        assert resp.status_code == 500
        assert resp.json()["error"]["title"] == "Internal error"

    def test_retryable_sets_retry_after(self, client):
        resp = client.get("/upstream")
        assert resp.headers["retry-after"] == "1"
        assert "retry-after" not in client.get("/unregistered").headers


class TestRegistryStatusValidation:
    def test_success_status_rejected(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(
            textwrap.dedent(
                """
                errors:
                  - code: MPX-API-001
                    domain: API
                    title: t
                    severity: INFO
                    retryable: false
                    http_status: 200
                    safe_message: m
                """
            )
        )
        with pytest.raises(RegistryValidationError, match="not an error status"):
            ErrorRegistry().load(path)

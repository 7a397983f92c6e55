from fastapi.testclient import TestClient

from chunkstore.config import settings
from chunkstore.main import app


def test_openapi_includes_standard_error_schema(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(settings, "storage_root", str(tmp_path))
    with TestClient(app) as client:
        spec = client.get("/openapi.json").json()

    components = spec.get("components", {}).get("schemas", {})
    assert "ErrorResponse" in components

    chunk_responses = spec["paths"]["/v1/files/{upload_id}/chunks/{chunk_index}"]["put"]["responses"]
    for status_code in ("404", "409", "503"):
        assert chunk_responses[status_code]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")

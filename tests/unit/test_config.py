import json

import pytest
from pydantic import ValidationError

from core.config import TenantConfig, load_tenant_configs


def test_load_tenant_configs_list(tmp_path):
    path = tmp_path / "tenants.json"
    path.write_text(json.dumps([
        {"tenant_id": "acme", "api_base_url": "https://acme.example.com/admin/api/2024-01/", "access_token": "t1"},
        {"tenant_id": "globex", "api_base_url": "https://globex.example.com", "enabled": False},
    ]))

    tenants = load_tenant_configs(str(path))

    assert [t.tenant_id for t in tenants] == ["acme", "globex"]
    assert tenants[0].api_base_url == "https://acme.example.com/admin/api/2024-01"
    assert tenants[0].access_token.get_secret_value() == "t1"
    assert tenants[1].enabled is False


def test_load_tenant_configs_object_form(tmp_path):
    path = tmp_path / "tenants.json"
    path.write_text(json.dumps({"tenants": [{"tenant_id": "acme", "api_base_url": "https://acme.example.com"}]}))

    assert [t.tenant_id for t in load_tenant_configs(str(path))] == ["acme"]


def test_missing_tenants_file(tmp_path):
    assert load_tenant_configs(str(tmp_path / "absent.json")) == []


def test_safe_snapshot_omits_token():
    tenant = TenantConfig(tenant_id="acme", api_base_url="https://acme.example.com", access_token="secret")

    snapshot = tenant.safe_snapshot()

    assert "access_token" not in snapshot
    assert snapshot["tenant_id"] == "acme"


@pytest.mark.parametrize("overrides", [
    {"timezone": "Mars/Olympus_Mons"},
    {"business_hours_start": 9, "business_hours_end": 9},
    {"retry_base_delay_seconds": 10.0, "retry_max_delay_seconds": 1.0},
    {"page_size": 500},
])
def test_invalid_tenant_config(overrides):
    with pytest.raises(ValidationError):
        TenantConfig(tenant_id="acme", api_base_url="https://acme.example.com", **overrides)

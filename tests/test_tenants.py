import threading
import orjson
import pytest
from pydantic import ValidationError
from rollups.errors import InvalidTenantError
from rollups.schemas import TenantConfig, WindowKind
from rollups.tenants import TenantRegistry, TenantSnapshot, load_tenant_configs

def test_tenant_config_canonicalizes_id_and_windows():
    c = TenantConfig.model_validate({"_id": "MyApp", "windows": ["Day", "Hour", "day"], "groups": ["b", "a|b"]})
    assert c.application_id == "myapp"
    assert c.windows == (WindowKind.DAY, WindowKind.HOUR)
    assert c.groups == ("b", "a|b")
    assert c.log_all_events is False

def test_tenant_config_is_immutable():
    c = TenantConfig(application_id="a", windows=["day"], groups=["x"])
    with pytest.raises(ValidationError):
        c.application_id = "b"

def test_snapshot_lookup_is_case_insensitive():
    snap = TenantSnapshot([TenantConfig(application_id="Shop", windows=["day"], groups=["country"])])
    assert "SHOP" in snap
    assert snap["shop"].application_id == "shop"
    assert "other" not in snap
    assert len(snap) == 1

def test_registry_rejects_unknown_tenant():
    reg = TenantRegistry([TenantConfig(application_id="shop")])
    assert reg.is_valid("Shop")
    with pytest.raises(InvalidTenantError):
        reg.get("nope")

def test_replace_swaps_whole_snapshot():
    reg = TenantRegistry([TenantConfig(application_id="old")])
    before = reg.snapshot()
    reg.replace([TenantConfig(application_id="new")])
    assert not reg.is_valid("old")
    assert reg.is_valid("new")
    # readers holding the previous snapshot keep a consistent view
    assert "old" in before and "new" not in before

def test_concurrent_readers_see_complete_snapshots():
    a = [TenantConfig(application_id=f"a{i}") for i in range(50)]
    b = [TenantConfig(application_id=f"b{i}") for i in range(50)]
    reg = TenantRegistry(a)
    seen = []

    def read():
        for _ in range(500):
            ids = set(reg.snapshot())
            seen.append(ids == {c.application_id for c in a} or ids == {c.application_id for c in b})

    t = threading.Thread(target=read)
    t.start()
    for i in range(200):
        reg.replace(b if i % 2 else a)
    t.join()
    assert all(seen)

def test_load_tenant_configs_from_file(tmp_path):
    path = tmp_path / "tenants.json"
    path.write_bytes(orjson.dumps([
        {"application_id": "Shop", "windows": ["Day", "AllTime"], "groups": ["country", "country|city"], "log_all_events": True},
        {"application_id": "blog", "windows": ["hour"], "groups": ["author"]},
    ]))
    reg = TenantRegistry()
    snap = reg.refresh_from_file(str(path))
    assert sorted(snap) == ["blog", "shop"]
    assert reg.get("shop").log_all_events is True
    assert reg.get("shop").windows == (WindowKind.DAY, WindowKind.ALLTIME)

def test_load_tenant_configs_accepts_wrapped_object(tmp_path):
    path = tmp_path / "tenants.json"
    path.write_bytes(orjson.dumps({"tenants": [{"application_id": "x", "windows": ["week"], "groups": []}]}))
    assert [c.application_id for c in load_tenant_configs(str(path))] == ["x"]

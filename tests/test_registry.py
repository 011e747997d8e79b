import threading

import pytest

from iotca.db import Database
from iotca.errors import DuplicateServiceIdError, DuplicateServiceNameError, NotFound
from iotca.keys import KeyPair
from iotca.registry import ServiceIdentity, ServiceMetadata, ServiceRegistry


def pair(tag):
    return KeyPair(f"-----PRIVATE {tag}-----\nabc\n", f"-----PUBLIC {tag}-----", "rsa")


def test_register_and_lookup(db):
    reg = ServiceRegistry(db)
    meta = ServiceMetadata(owner="Company123", description="co2", addresses={"eth0": ["10.0.0.2"]},
                           can_write_data=True)
    rec = reg.register(ServiceIdentity("DataAcquisition", "acq-001"), pair("A"), meta)

    assert rec.service_id == "acq-001"
    assert reg.lookup("DataAcquisition") == rec
    assert reg.lookup_by_id("acq-001") == rec
    assert reg.get("DataAcquisition").addresses == {"eth0": ["10.0.0.2"]}
    assert reg.get_by_id("acq-001").can_write_data is True
    assert reg.count() == 1
    assert [r.service_name for r in reg.list_services()] == ["DataAcquisition"]


def test_unknown_service(db):
    reg = ServiceRegistry(db)
    assert reg.lookup("ghost") is None
    assert reg.lookup_by_id("ghost-1") is None
    with pytest.raises(NotFound):
        reg.get("ghost")
    with pytest.raises(NotFound):
        reg.get_by_id("ghost-1")


def test_duplicate_service_id(db):
    reg = ServiceRegistry(db)
    reg.register(ServiceIdentity("A", "shared-id"), pair("A"), ServiceMetadata())
    with pytest.raises(DuplicateServiceIdError):
        reg.register(ServiceIdentity("B", "shared-id"), pair("B"), ServiceMetadata())
    assert reg.count() == 1


def test_duplicate_service_name(db):
    reg = ServiceRegistry(db)
    reg.register(ServiceIdentity("A", "a-1"), pair("A"), ServiceMetadata())
    with pytest.raises(DuplicateServiceNameError):
        reg.register(ServiceIdentity("A", "a-2"), pair("A2"), ServiceMetadata())
    assert reg.get("A").service_id == "a-1"


def test_registration_survives_restart(tmp_path):
    path = str(tmp_path / "restart.db")
    db = Database(path)
    db.init_schema()
    ServiceRegistry(db).register(ServiceIdentity("A", "a-1"), pair("A"), ServiceMetadata(owner="o"))
    db.close()

    reopened = Database(path)
    reopened.init_schema()
    try:
        rec = ServiceRegistry(reopened).get("A")
        assert rec.owner == "o"
        assert rec.private_key == pair("A").private_key
    finally:
        reopened.close()


def test_verify_private_key_is_normalized(db):
    reg = ServiceRegistry(db)
    reg.register(ServiceIdentity("A", "a-1"), pair("A"), ServiceMetadata())
    assert reg.verify_private_key("A", pair("A").private_key)
    assert reg.verify_private_key("A", pair("A").private_key.replace("\n", "\r\n") + "  ")
    assert not reg.verify_private_key("A", pair("B").private_key)
    assert not reg.verify_private_key("A", "")
    assert not reg.verify_private_key("ghost", pair("A").private_key)


def test_public_dict_has_no_private_key(db):
    reg = ServiceRegistry(db)
    rec = reg.register(ServiceIdentity("A", "a-1"), pair("A"), ServiceMetadata())
    assert "privateKey" not in rec.public_dict()
    assert rec.keys_dict()["serviceId"] == "a-1"


def test_concurrent_registration_of_one_name(db):
    reg = ServiceRegistry(db)
    outcomes = []
    barrier = threading.Barrier(8)

    def worker(i):
        barrier.wait()
        try:
            reg.register(ServiceIdentity("Racer", f"racer-{i}"), pair(str(i)), ServiceMetadata())
            outcomes.append("ok")
        except DuplicateServiceNameError:
            outcomes.append("dup")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 7
    assert reg.count() == 1

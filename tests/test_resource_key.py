"""Tests for the identity <-> VM id mapping."""

import pytest

from auto_vm.config import LifecycleConfig
from auto_vm.exceptions import InvalidIdentityError
from auto_vm.resource_key import ResourceKey

CONFIG = LifecycleConfig()


class TestFromIdentity:
    def test_default_scheme(self) -> None:
        key = ResourceKey.from_identity("vm_user_07", CONFIG)
        assert key.identity == "vm_user_07"
        assert key.suffix == "07"
        assert key.vm_id == 207
        assert key.vm_name == "user-vm-207"

    def test_leading_zeros_are_significant(self) -> None:
        assert ResourceKey.from_identity("vm_user_7", CONFIG).vm_id == 27
        assert ResourceKey.from_identity("vm_user_007", CONFIG).vm_id == 2007

    def test_custom_scheme(self) -> None:
        config = LifecycleConfig(identity_prefix="student", vm_id_start="31", vm_name_prefix="lab-")
        key = ResourceKey.from_identity("student4", config)
        assert key.vm_id == 314
        assert key.vm_name == "lab-314"

    @pytest.mark.parametrize(
        "identity",
        ["root", "vm_user_", "vm_user_ab", "vm_user_07x", "xvm_user_07", "vm_user_-1", "vm_user_" + "1" * 30],
    )
    def test_rejects_foreign_identities(self, identity: str) -> None:
        with pytest.raises(InvalidIdentityError):
            ResourceKey.from_identity(identity, CONFIG)

    def test_str(self) -> None:
        assert str(ResourceKey.from_identity("vm_user_07", CONFIG)) == "vm_user_07/207"


class TestFromVmId:
    def test_inverse_of_from_identity(self) -> None:
        for identity in ("vm_user_00", "vm_user_07", "vm_user_42", "vm_user_123"):
            key = ResourceKey.from_identity(identity, CONFIG)
            assert ResourceKey.from_vm_id(key.vm_id, CONFIG) == key

    def test_outside_managed_range(self) -> None:
        with pytest.raises(InvalidIdentityError):
            ResourceKey.from_vm_id(9000, CONFIG)

    def test_bare_prefix_rejected(self) -> None:
        with pytest.raises(InvalidIdentityError):
            ResourceKey.from_vm_id(2, CONFIG)

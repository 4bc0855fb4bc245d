"""Deterministic mapping between identities and VM ids.

vm_user_07 -> VM 207 named user-vm-207 (with the default naming scheme).
The mapping is a pure function in both directions, so no table is stored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from auto_vm.config import LifecycleConfig
from auto_vm.exceptions import InvalidIdentityError

_IDENTITY_MAX_LENGTH = 32  # useradd limit


@dataclass(frozen=True)
class ResourceKey:
    """Resource key of one identity.

    Attributes:
        identity: OS account name (vm_user_07)
        suffix: Numeric part of the identity, leading zeros kept ("07")
        vm_id: Backend VM id (207)
        vm_name: Backend VM display name (user-vm-207)
    """

    identity: str
    suffix: str
    vm_id: int
    vm_name: str

    @classmethod
    def from_identity(cls, identity: str, config: LifecycleConfig) -> ResourceKey:
        """Derive the key of an identity.

        Raises:
            InvalidIdentityError: identity is not <identity_prefix><digits>
        """
        if len(identity) > _IDENTITY_MAX_LENGTH:
            raise InvalidIdentityError(
                f"Identity too long: {len(identity)} > {_IDENTITY_MAX_LENGTH}",
                context={"identity": identity},
            )
        match = re.fullmatch(rf"{re.escape(config.identity_prefix)}([0-9]+)", identity)
        if match is None:
            raise InvalidIdentityError(
                f"Invalid identity {identity!r}; expected format: {config.identity_prefix}<number>",
                context={"identity": identity, "identity_prefix": config.identity_prefix},
            )
        suffix = match.group(1)
        vm_id = int(f"{config.vm_id_start}{suffix}")
        return cls(identity=identity, suffix=suffix, vm_id=vm_id, vm_name=f"{config.vm_name_prefix}{vm_id}")

    @classmethod
    def from_vm_id(cls, vm_id: int, config: LifecycleConfig) -> ResourceKey:
        """Recover the key from a stored VM id.

        Raises:
            InvalidIdentityError: vm_id does not start with vm_id_start
        """
        text = str(vm_id)
        if not text.startswith(config.vm_id_start) or len(text) == len(config.vm_id_start):
            raise InvalidIdentityError(
                f"VM id {vm_id} is outside the managed range (must start with {config.vm_id_start})",
                context={"vm_id": vm_id},
            )
        suffix = text[len(config.vm_id_start) :]
        return cls(
            identity=f"{config.identity_prefix}{suffix}",
            suffix=suffix,
            vm_id=vm_id,
            vm_name=f"{config.vm_name_prefix}{vm_id}",
        )

    def __str__(self) -> str:
        return f"{self.identity}/{self.vm_id}"

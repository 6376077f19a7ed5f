from __future__ import annotations

import ipaddress
import shlex
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config_doc import (
    DisableUsernsRemap,
    Edit,
    EnableUsernsRemap,
    RegisterRuntime,
    SetAddressPool,
    SetBridgeIP,
    SetDefaultRuntime,
    SetImageStore,
    UnregisterRuntime,
)
from .settings import Settings, settings

SYSBOX_RUNTIME = "sysbox-runc"
BUILTIN_RUNTIMES = frozenset({"runc", "io.containerd.runc.v2"})


class AddressPool(BaseModel):
    model_config = ConfigDict(frozen=True)

    base: str = Field(..., description="Pool network in CIDR form")
    size: int = Field(24, description="Prefix length of each allocated subnet")

    @model_validator(mode="after")
    def _check(self) -> "AddressPool":
        try:
            net = ipaddress.ip_network(self.base, strict=True)
        except ValueError as e:
            raise ValueError(f"default-address-pool base must be a network in CIDR form: {e}") from e
        if not net.prefixlen <= self.size <= net.max_prefixlen:
            raise ValueError(
                f"default-address-pool size must be between {net.prefixlen} and {net.max_prefixlen}."
            )
        return self

    @classmethod
    def parse(cls, raw: str) -> "AddressPool":
        return cls(**_pool_fields(raw))


def _pool_fields(raw: str) -> dict:
    """Accept `<cidr>` or dockerd's own `base=<cidr>,size=<n>` form."""
    if "=" not in raw:
        return {"base": raw.strip()}
    fields: dict[str, str] = {}
    for part in raw.split(","):
        key, sep, value = part.partition("=")
        if not sep or key.strip() not in {"base", "size"}:
            raise ValueError(f"Unexpected address pool field '{part}'. Use base=<cidr>,size=<n>.")
        fields[key.strip()] = value.strip()
    if "base" not in fields:
        raise ValueError("Address pool needs base=<cidr>.")
    return {"base": fields["base"], "size": int(fields.get("size", 24))}


class DockerCfgIntent(BaseModel):
    """Validated docker-cfg invocation."""

    model_config = ConfigDict(frozen=True)

    sysbox_runtime: Literal["enable", "disable"] | None = None
    userns_remap: Literal["enable", "disable"] | None = None
    default_runtime: str | None = Field(None, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")
    containerd_image_store: bool | None = None
    bip: str | None = Field(None, description="Bridge IP in CIDR form, e.g. 172.20.0.1/16")
    default_address_pool: AddressPool | None = None
    cgroup_driver: Literal["cgroupfs", "systemd"] | None = None

    config_only: bool = False
    force_restart: bool = False
    dry_run: bool = False

    @field_validator("bip")
    @classmethod
    def _check_bip(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if "/" not in v:
            raise ValueError("bip must be in CIDR form, e.g. 172.20.0.1/16")
        return str(ipaddress.ip_interface(v))

    @field_validator("default_address_pool", mode="before")
    @classmethod
    def _parse_pool(cls, v):
        if isinstance(v, str):
            return _pool_fields(v)
        return v

    def edits(self, cfg: Settings = settings) -> list[Edit]:
        """Document edits in their fixed application order.

        Order: runtime registration, default runtime, userns-remap, bip,
        address pool, image store. The cgroup driver is not a document edit.
        """
        out: list[Edit] = []
        if self.sysbox_runtime == "enable":
            out.append(RegisterRuntime(SYSBOX_RUNTIME, cfg.sysbox_runc_path))
        elif self.sysbox_runtime == "disable":
            out.append(UnregisterRuntime(SYSBOX_RUNTIME))
        if self.default_runtime is not None:
            out.append(SetDefaultRuntime(self.default_runtime))
        if self.userns_remap == "enable":
            out.append(EnableUsernsRemap(cfg.userns_remap_user))
        elif self.userns_remap == "disable":
            out.append(DisableUsernsRemap())
        if self.bip is not None:
            out.append(SetBridgeIP(self.bip))
        if self.default_address_pool is not None:
            out.append(SetAddressPool(self.default_address_pool.base, self.default_address_pool.size))
        if self.containerd_image_store is not None:
            out.append(SetImageStore(self.containerd_image_store))
        return out


class WorkerIntent(BaseModel):
    """Validated sysbox worker command. None args keep the current launch line."""

    model_config = ConfigDict(frozen=True)

    action: Literal["start", "stop", "restart", "status"]
    mgr_args: list[str] | None = None
    fs_args: list[str] | None = None

    @field_validator("mgr_args", "fs_args", mode="before")
    @classmethod
    def _split(cls, v):
        if isinstance(v, str):
            return shlex.split(v)
        return v

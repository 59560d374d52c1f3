"""Runtime configuration for the onboarding service."""
from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import yaml

from .challenges import DEFAULT_CHALLENGE_TTL, DEFAULT_REAPER_INTERVAL, DEFAULT_RECEIPT_TTL
from .credentials import INTERNAL_PARAMETERS, PROVIDER_PARAMETERS, KdfParameters
from .identity_provider import parse_reload_command
from .invites import DEFAULT_INVITE_TTL_HOURS
from .records import resolve_data_dir
from .vpn import DEFAULT_PROVISIONER_URL, DEFAULT_VPN_NETWORK

_ENV_PREFIX = "ONBOARD_"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration. Build it with :func:`load_settings`."""

    data_dir: Path
    secret_key: Optional[str] = None
    operator_tokens: Tuple[str, ...] = ()
    challenge_ttl: timedelta = DEFAULT_CHALLENGE_TTL
    reaper_interval: timedelta = DEFAULT_REAPER_INTERVAL
    receipt_ttl: timedelta = DEFAULT_RECEIPT_TTL
    require_receipt: bool = True
    require_invite: bool = False
    invite_ttl_hours: int = DEFAULT_INVITE_TTL_HOURS
    idp_users_file: Optional[Path] = None
    idp_reload_command: Optional[Sequence[str]] = None
    vpn_provisioner_url: str = DEFAULT_PROVISIONER_URL
    vpn_network: str = DEFAULT_VPN_NETWORK
    internal_kdf: KdfParameters = field(default=INTERNAL_PARAMETERS)
    provider_kdf: KdfParameters = field(default=PROVIDER_PARAMETERS)


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"Invalid boolean value {value!r} for {key}")


def _as_int(key: str, value: Any, *, minimum: int = 1) -> int:
    try:
        number = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer value {value!r} for {key}") from exc
    if number < minimum:
        raise ValueError(f"{key} must be at least {minimum}")
    return number


def _as_tokens(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return tuple(token.strip() for token in items if token and token.strip())


def _load_file(config_path: Path) -> Dict[str, Any]:
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")
    return {str(key).lower(): value for key, value in raw.items()}


def _collect(env: Mapping[str, str], config_path: Optional[Path]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if config_path is not None:
        values.update(_load_file(config_path))
    for key, value in env.items():
        if key.startswith(_ENV_PREFIX) and key != f"{_ENV_PREFIX}CONFIG":
            values[key[len(_ENV_PREFIX):].lower()] = value
    return values


def _kdf(values: Dict[str, Any], prefix: str, defaults: KdfParameters) -> KdfParameters:
    return KdfParameters(
        time_cost=_as_int(f"{prefix}_time_cost", values.get(f"{prefix}_time_cost", defaults.time_cost)),
        memory_cost=_as_int(
            f"{prefix}_memory_cost", values.get(f"{prefix}_memory_cost", defaults.memory_cost)
        ),
        parallelism=_as_int(
            f"{prefix}_parallelism", values.get(f"{prefix}_parallelism", defaults.parallelism)
        ),
    )


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    if not env_value:
        return None
    return Path(env_value).expanduser().resolve(strict=False)


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    *,
    config_path: Optional[Path] = None,
) -> Settings:
    """Build :class:`Settings` from an optional YAML file overlaid by ``ONBOARD_*`` variables.

    YAML keys are the variable names without the prefix, in lower case
    (``challenge_ttl_seconds: 300``).
    """

    source = os.environ if env is None else env
    if config_path is None:
        config_path = resolve_config_path(source.get(f"{_ENV_PREFIX}CONFIG"))
    values = _collect(source, config_path)

    vpn_network = str(values.get("vpn_network") or DEFAULT_VPN_NETWORK)
    try:
        ipaddress.ip_network(vpn_network, strict=False)
    except ValueError as exc:
        raise ValueError(f"Invalid network {vpn_network!r} for vpn_network") from exc

    idp_file = values.get("idp_users_file")
    reload_command = values.get("idp_reload_command")
    if isinstance(reload_command, (list, tuple)):
        parsed_reload: Optional[Sequence[str]] = [str(part) for part in reload_command] or None
    else:
        parsed_reload = parse_reload_command(str(reload_command) if reload_command else None)

    return Settings(
        data_dir=resolve_data_dir(values.get("data_dir")),
        secret_key=str(values["secret_key"]) if values.get("secret_key") else None,
        operator_tokens=_as_tokens(values.get("operator_tokens", "")),
        challenge_ttl=timedelta(
            seconds=_as_int(
                "challenge_ttl_seconds",
                values.get("challenge_ttl_seconds", int(DEFAULT_CHALLENGE_TTL.total_seconds())),
            )
        ),
        reaper_interval=timedelta(
            seconds=_as_int(
                "reaper_interval_seconds",
                values.get("reaper_interval_seconds", int(DEFAULT_REAPER_INTERVAL.total_seconds())),
            )
        ),
        receipt_ttl=timedelta(
            seconds=_as_int(
                "receipt_ttl_seconds",
                values.get("receipt_ttl_seconds", int(DEFAULT_RECEIPT_TTL.total_seconds())),
            )
        ),
        require_receipt=_as_bool("require_receipt", values.get("require_receipt", True)),
        require_invite=_as_bool("require_invite", values.get("require_invite", False)),
        invite_ttl_hours=_as_int(
            "invite_ttl_hours", values.get("invite_ttl_hours", DEFAULT_INVITE_TTL_HOURS)
        ),
        idp_users_file=Path(str(idp_file)).expanduser().resolve(strict=False) if idp_file else None,
        idp_reload_command=parsed_reload,
        vpn_provisioner_url=str(values.get("vpn_provisioner_url") or DEFAULT_PROVISIONER_URL),
        vpn_network=vpn_network,
        internal_kdf=_kdf(values, "kdf_internal", INTERNAL_PARAMETERS),
        provider_kdf=_kdf(values, "kdf_provider", PROVIDER_PARAMETERS),
    )


__all__ = ["Settings", "load_settings", "resolve_config_path"]

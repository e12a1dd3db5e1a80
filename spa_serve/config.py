"""
Defaults and startup configuration for spa-serve.

Values resolve as: built-in default < SPA_SERVE_PORT env < spa-serve.json < CLI flag.
Everything handed to the issuer and the server is a frozen dataclass, built once.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Tuple, Union

# ─── Defaults ────────────────────────────────────────────────────────────────
DEFAULT_LISTEN_PORT = 5000
PORT_ENV            = "SPA_SERVE_PORT"
DEFAULT_SPA_PATH    = "index.html"
DEFAULT_HOSTS       = "localhost"
DEFAULT_VALID_DAYS  = 365
DEFAULT_RSA_BITS    = 2048
ORGANIZATION        = "Acme Co"

CERT_FILE   = "cert.pem"
KEY_FILE    = "key.pem"
CONFIG_FILE = "spa-serve.json"

ECDSA_CURVES = ("P224", "P256", "P384", "P521")


class ConfigError(ValueError):
    """Raised for unusable configuration values."""


# ─── Key algorithms ──────────────────────────────────────────────────────────
@dataclass(frozen=True)
class RSAKey:
    bits: int = DEFAULT_RSA_BITS


@dataclass(frozen=True)
class ECDSAKey:
    curve: str = "P256"

    def __post_init__(self):
        if self.curve not in ECDSA_CURVES:
            raise ConfigError(f"Unrecognized elliptic curve: {self.curve!r} (expected one of {', '.join(ECDSA_CURVES)})")


KeyAlgorithm = Union[RSAKey, ECDSAKey]


# ─── Config values ───────────────────────────────────────────────────────────
def split_hosts(hosts) -> Tuple[str, ...]:
    """Comma-separated string (or list) → tuple of host entries, order and duplicates kept."""
    if isinstance(hosts, str):
        return tuple(h.strip() for h in hosts.split(","))
    return tuple(str(h).strip() for h in hosts)


@dataclass(frozen=True)
class IssuerConfig:
    hosts: Tuple[str, ...] = (DEFAULT_HOSTS,)
    validity: timedelta = timedelta(days=DEFAULT_VALID_DAYS)
    is_ca: bool = True
    key_algorithm: KeyAlgorithm = field(default_factory=RSAKey)
    organization: str = ORGANIZATION


@dataclass(frozen=True)
class SPAConfig:
    listen_port: int = DEFAULT_LISTEN_PORT
    spa_fallback_path: str = DEFAULT_SPA_PATH


# ─── Config file ─────────────────────────────────────────────────────────────
def load_config(path=CONFIG_FILE) -> dict:
    """Read the optional JSON config file. Missing file → {}."""
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return cfg


def key_algorithm_from_config(cfg: dict) -> KeyAlgorithm:
    kind = str(cfg.get("key_algorithm", "rsa")).lower()
    if kind == "rsa":
        return RSAKey(bits=int(cfg.get("rsa_bits", DEFAULT_RSA_BITS)))
    if kind == "ecdsa":
        return ECDSAKey(curve=str(cfg.get("ecdsa_curve", "P256")))
    raise ConfigError(f"Unknown key algorithm: {kind!r} (expected 'rsa' or 'ecdsa')")


def _as_bool(key, value) -> bool:
    # JSON booleans only; "false" would otherwise be truthy
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false, got {value!r}")
    return value


def issuer_config_from(cfg: dict) -> IssuerConfig:
    try:
        return IssuerConfig(
            hosts=split_hosts(cfg.get("hosts", DEFAULT_HOSTS)),
            validity=timedelta(days=int(cfg.get("valid_days", DEFAULT_VALID_DAYS))),
            is_ca=_as_bool("is_ca", cfg.get("is_ca", True)),
            key_algorithm=key_algorithm_from_config(cfg),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid issuance settings: {e}") from e


def spa_config_from(cfg: dict, args) -> SPAConfig:
    """CLI flags win over the config file, which wins over SPA_SERVE_PORT."""
    port = args.listen if args.listen is not None else cfg.get(
        "listen", os.environ.get(PORT_ENV, DEFAULT_LISTEN_PORT))
    spa  = args.spa if args.spa is not None else cfg.get("spa", DEFAULT_SPA_PATH)
    try:
        port = int(port)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid listen port: {port!r}") from e
    if not 0 <= port <= 65535:
        raise ConfigError(f"Listen port out of range: {port}")
    return SPAConfig(listen_port=port, spa_fallback_path=str(spa))

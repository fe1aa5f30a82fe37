# reserve/config.py
"""
Broker settings, read from the environment.

Env vars:
- MODEL_ID (default: 11): the model every submission is registered for
- BROKER_ADDRESS: identity passed to the oracle as the callback target
- ORACLE_ADDRESS: the only principal allowed to deliver callbacks
- ADMIN_ADDRESS: the only principal allowed to change gas budgets
- DEFAULT_GAS_BUDGETS (default: "11:5000000"): comma-separated model:gas pairs seeded at startup
- RESOLUTION_POLICY (default: overwrite): "overwrite" or "reject" for repeated callbacks
- CALLBACK_DATA (default: empty): hex bytes attached to every registration
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from reserve.errors import InvalidRequest

RESOLUTION_POLICIES = ("overwrite", "reject")
# gas budgets are stored as signed 64-bit integers
MAX_GAS_LIMIT = 2 ** 63 - 1


def parse_gas_budgets(raw: str) -> Dict[int, int]:
    """Parse "11:5000000,12:300000" into {11: 5000000, 12: 300000}."""
    budgets: Dict[int, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        model, _, gas = part.partition(":")
        try:
            budgets[int(model)] = int(gas)
        except ValueError as e:
            raise InvalidRequest(f"bad gas budget entry {part!r}") from e
    return budgets


def parse_hex(raw: str) -> bytes:
    raw = (raw or "").strip()
    if raw.startswith(("0x", "0X")):
        raw = raw[2:]
    try:
        return bytes.fromhex(raw)
    except ValueError as e:
        raise InvalidRequest(f"not a hex string: {raw[:32]!r}") from e


@dataclass(frozen=True)
class BrokerSettings:
    model_id: int = 11
    broker_address: str = "ai-reserve"
    oracle_address: str = "oracle"
    admin_address: str = "admin"
    default_gas_budgets: Dict[int, int] = field(default_factory=lambda: {11: 5_000_000})
    resolution_policy: str = "overwrite"
    callback_data: bytes = b""

    def __post_init__(self):
        if self.resolution_policy not in RESOLUTION_POLICIES:
            raise InvalidRequest(
                f"RESOLUTION_POLICY must be one of {RESOLUTION_POLICIES}, got {self.resolution_policy!r}"
            )
        if not self.oracle_address:
            raise InvalidRequest("ORACLE_ADDRESS must not be empty")

    @classmethod
    def from_env(cls) -> "BrokerSettings":
        return cls(
            model_id=int(os.getenv("MODEL_ID", "11")),
            broker_address=os.getenv("BROKER_ADDRESS", "ai-reserve"),
            oracle_address=os.getenv("ORACLE_ADDRESS", "oracle"),
            admin_address=os.getenv("ADMIN_ADDRESS", "admin"),
            default_gas_budgets=parse_gas_budgets(os.getenv("DEFAULT_GAS_BUDGETS", "11:5000000")),
            resolution_policy=os.getenv("RESOLUTION_POLICY", "overwrite").strip().lower(),
            callback_data=parse_hex(os.getenv("CALLBACK_DATA", "")),
        )

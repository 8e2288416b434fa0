"""Chain-related data transfer objects."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TypedDict


class Coin(TypedDict):
    denom: str
    amount: str


@dataclass(frozen=True)
class TaxPolicy:
    """Treasury tax parameters as of one chain height. Read-only once built."""

    rate: str
    policy_cap: str
    as_of_height: int
    caps: Mapping[str, str] = field(default_factory=dict)
    exemption_list: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "caps", MappingProxyType(dict(self.caps)))
        object.__setattr__(self, "exemption_list", frozenset(self.exemption_list))

    def cap_for(self, denom: str) -> str:
        return self.caps.get(denom) or self.policy_cap

    def is_exempt_pair(self, sender: str | None, recipient: str | None) -> bool:
        return (
            sender is not None
            and recipient is not None
            and sender in self.exemption_list
            and recipient in self.exemption_list
        )

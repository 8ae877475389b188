"""
BlobRef - Reference to one stored byte object.
"""

from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    """Storage class chosen by access pattern."""

    COLD = 'cold'
    WARM = 'warm'
    HOT = 'hot'


@dataclass(frozen=True)
class BlobRef:
    """
    Opaque reference to a stored blob.

    Attributes:
        key: Deterministic storage key
        tier: Storage tier holding the blob
    """
    key: str
    tier: Tier

    def to_dict(self) -> dict:
        return {'key': self.key, 'tier': self.tier.value}

    @classmethod
    def from_dict(cls, data: dict) -> 'BlobRef':
        return cls(key=data['key'], tier=Tier(data['tier']))

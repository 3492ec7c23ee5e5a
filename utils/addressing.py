"""Address normalization helpers."""

from __future__ import annotations


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup.

    Solana base58 addresses are case-sensitive, so only whitespace is stripped.
    """
    return str(value or "").strip()

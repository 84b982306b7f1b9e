"""Token unit and JSON-RPC quantity conversions using exact integer math."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, localcontext


ETHER_DECIMALS = 18
MAX_UINT256 = 2**256 - 1


def parse_units(value: Decimal | int | str, decimals: int) -> int:
    """Convert a human amount to base units, rounding down (conservative)."""
    if isinstance(value, float):
        raise TypeError("Pass amounts as str or Decimal, not float")
    with localcontext() as ctx:
        ctx.prec = 80
        dec = Decimal(str(value))
        if dec < 0:
            raise ValueError(f"Amount must be non-negative: {value}")
        scaled = (dec * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR)
        return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Format base units as a plain decimal string without trailing zeros."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(int(value)), 10**decimals)
    if frac == 0 or decimals == 0:
        return f"{sign}{whole}"
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_str}"


def parse_ether(value: Decimal | int | str) -> int:
    return parse_units(value, ETHER_DECIMALS)


def format_ether(value: int) -> str:
    return format_units(value, ETHER_DECIMALS)


def to_quantity(value: int) -> str:
    """Encode an integer as a JSON-RPC hex quantity."""
    if value < 0:
        raise ValueError("Quantities must be non-negative")
    return hex(int(value))


def from_quantity(value: str | int | None) -> int:
    """Decode a JSON-RPC hex quantity; empty values decode to zero."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError("Quantities must be hex strings or ints")
    if isinstance(value, int):
        return value
    raw = value.strip()
    if raw in ("", "0x", "0X"):
        return 0
    return int(raw, 16) if raw.lower().startswith("0x") else int(raw)


def parse_base_units(value: object, field_name: str) -> int:
    """Read a persisted integer (decimal string or int) exactly."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer base-unit value")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"{field_name} must be an integer base-unit value")

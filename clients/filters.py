"""Interface display policy: none, static (no dynamic tunnels) or all."""

from typing import List, Sequence, TypeVar, Union

from models import DISPLAY_ALL, DISPLAY_NONE

# Dynamic per-session tunnel interfaces created by RouterOS for PPP-family and IPsec peers.
DYNAMIC_TUNNEL_PREFIXES = ("pppoe-", "l2tp-", "pptp-", "sstp-", "ovpn-", "ppp-", "ipsec-")

T = TypeVar("T")


def strip_decoration(name: str) -> str:
    """'<pppoe-alice>' -> 'pppoe-alice'."""
    return str(name or "").strip().strip("<>[]").strip()


def is_dynamic_interface(name: str) -> bool:
    return strip_decoration(name).lower().startswith(DYNAMIC_TUNNEL_PREFIXES)


def _name_of(item: Union[str, object]) -> str:
    return item if isinstance(item, str) else getattr(item, "name", "")


def filter_interfaces(items: Sequence[T], mode: str) -> List[T]:
    """Apply the display policy to interface names or objects with a .name attribute.

    Unknown modes behave like 'static'.
    """
    if mode == DISPLAY_NONE:
        return []
    if mode == DISPLAY_ALL:
        return list(items)
    return [item for item in items if not is_dynamic_interface(_name_of(item))]

from typing import Any, Mapping

# Hop-by-hop headers are only meaningful for one transport leg (RFC 2616 13.5.1)
HOP_BY_HOP_HEADERS = frozenset(
    name.lower()
    for name in (
        "Connection",
        "Keep-Alive",
        "Proxy-Authenticate",
        "Proxy-Authorization",
        "Trailers",
        "Transfer-Encoding",
        "Upgrade",
        "Te",
    )
)


def is_hop_by_hop(name: str) -> bool:
    return name.lower() in HOP_BY_HOP_HEADERS


def copy_headers(source: Mapping[str, str], destination: Any) -> None:
    """Copy every end-to-end header from source into destination.

    ``source`` may hold a name several times (a multidict); each value is
    added in order, so ``destination`` must support ``add(name, value)``.
    """
    for name, value in source.items():
        if is_hop_by_hop(name):
            continue
        destination.add(name, value)

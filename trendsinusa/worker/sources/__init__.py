from .json_feed import fetch_feed
from .seed import fetch_seed_payload

__all__ = [
    "fetch_feed",
    "fetch_seed_payload",
]

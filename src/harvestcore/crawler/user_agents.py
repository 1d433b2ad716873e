"""
Browser-like request headers.

Every request carries a realistic Chrome ``User-Agent`` picked uniformly at
random from a small fixed pool, plus the header set a real browser sends on
a top-level navigation.
"""

from __future__ import annotations

import random
from typing import Dict, Mapping, Optional

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

DEFAULT_ACCEPT_LANGUAGE = "he-IL,he;q=0.9,en-US;q=0.8,en;q=0.7"


def random_user_agent(rng: Optional[random.Random] = None) -> str:
    """Get a random desktop user agent."""
    return (rng or random).choice(USER_AGENTS)


def build_browser_headers(
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE,
    extra: Optional[Mapping[str, str]] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, str]:
    """Header set for one request; ``extra`` wins over the defaults."""
    headers = {
        "User-Agent": random_user_agent(rng),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": accept_language,
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
    }
    if extra:
        headers.update(extra)
    return headers

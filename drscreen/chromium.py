import glob
import os
from typing import Iterable, List, Mapping, Optional, Sequence

from .errors import ExecutableNotFound

ENV_OVERRIDE = "PUPPETEER_EXECUTABLE_PATH"

# Nix builds keep chromium under a hashed store path
NIX_STORE_PATTERNS = (
    "/nix/store/*-chromium-*/bin/chromium",
)

SYSTEM_CANDIDATES = (
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/snap/bin/chromium",
)

# Flags the restricted container needs; the browser cannot create its own sandbox there.
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--single-process",
    "--disable-gpu",
]


class ExecutableLocator:
    """
    Finds the Chromium binary by probing an ordered list of paths.

    Order: the PUPPETEER_EXECUTABLE_PATH override, then glob matches
    (Nix store), then fixed system locations. First existing executable wins.
    """

    def __init__(
        self,
        candidates: Sequence[str] = SYSTEM_CANDIDATES,
        patterns: Sequence[str] = NIX_STORE_PATTERNS,
        env: Optional[Mapping[str, str]] = None,
        override: Optional[str] = None,
    ):
        self.candidates = list(candidates)
        self.patterns = list(patterns)
        self.env = os.environ if env is None else env
        self.override = override

    def probe_order(self) -> List[str]:
        order: List[str] = []
        override = self.override or self.env.get(ENV_OVERRIDE)
        if override:
            order.append(override)
        for pattern in self.patterns:
            order.extend(sorted(glob.glob(pattern)))
        order.extend(self.candidates)
        return _dedupe(order)

    def locate(self) -> str:
        tried = self.probe_order()
        for path in tried:
            if os.path.isfile(path) and os.access(path, os.X_OK):
                return path
        raise ExecutableNotFound(tried)


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out

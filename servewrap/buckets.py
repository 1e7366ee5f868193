from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from starlette.requests import Request

from servewrap.observability.metrics import LabelMap


# Path components that should be collapsed into a single "…" so that IDs,
# hostnames and emails don't explode the number of buckets:
#   - hex strings of 9+ characters
#   - anything with a period followed by 2+ characters (domains, emails)
#   - common stable node/user/tailnet IDs
#   - "<name>@passkey" segments
_NORMALIZE_PATH_RE = re.compile(
    r"([a-fA-F0-9]{9,}"
    r"|([^/])+\.([^/]){2,}"
    r"|((n|k|u|L|t|S)[a-zA-Z0-9]{5,}(CNTRL|Djz1H|LV5CY|mxgaY|jNy1b))"
    r"|(([^/])+@passkey))"
)

ELLIPSIS = "…"


def normalized_path(p: str) -> str:
    """Return p without its query string and with ID-like components collapsed."""

    # Fast path: nothing to replace, only drop the query.
    if _NORMALIZE_PATH_RE.search(p) is None:
        return p.partition("?")[0]

    replaced = _NORMALIZE_PATH_RE.sub(ELLIPSIS, p)
    return replaced.partition("?")[0]


@dataclass
class BucketedStatsOptions:
    """Per-bucket started/finished counters for a handler.

    ``bucket`` maps a request to its bucket label; ``normalized_path`` of the
    URL path is used when it is None.
    """

    bucket: Callable[[Request], str] | None = None
    started: LabelMap | None = None
    finished: LabelMap | None = None

    def bucket_for_request(self, request: Request) -> str:
        if self.bucket is not None:
            return self.bucket(request)
        return normalized_path(request.url.path)

    def record_start(self, bucket: str) -> bool:
        """Count the start of a request in an already-known bucket.

        Newly seen buckets are only counted retroactively by record_finish, so
        internet scanning noise doesn't fill the label maps and started can
        never fall behind finished. Returns whether the start was recorded.
        """

        if self.started is None or not self.started.get(bucket):
            return False
        self.started.add(bucket, 1)
        return True

    def record_finish(self, bucket: str, start_recorded: bool, code: int) -> None:
        if self.finished is None:
            return
        if start_recorded:
            self.finished.add(bucket, 1)
        elif code < 400:
            # First non-error request for this bucket: count its start now.
            if self.started is not None:
                self.started.add(bucket, 1)
            self.finished.add(bucket, 1)

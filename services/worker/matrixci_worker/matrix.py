import logging
from typing import Iterable, List

from matrixci_common.models import RunConfiguration

logger = logging.getLogger(__name__)


def expand_matrix(channels: Iterable[str], allow_failures: Iterable[str] = ()) -> List[RunConfiguration]:
    """One RunConfiguration per channel, in declaration order, duplicates dropped."""
    allowed = set(allow_failures)
    seen = set()
    out = []
    for ch in channels:
        if ch in seen:
            logger.warning("Channel %s declared more than once; ignoring repeat", ch)
            continue
        seen.add(ch)
        out.append(RunConfiguration(channel=ch, allow_failure=ch in allowed))
    for ch in sorted(allowed - seen):
        logger.warning("allow_failures names undeclared channel %s", ch)
    return out

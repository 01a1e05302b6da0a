from __future__ import annotations

import logging

from ledger_worker.jobs.errors import FailpointError

logger = logging.getLogger(__name__)

AFTER_CLAIM_ONCE = "after_claim_once"


class Failpoint:
    """
    Dev-only fault injection for exercising the retry path.

    With mode ``after_claim_once`` the first ``trigger()`` call in this
    process raises a transient ``FailpointError``; every later call is a
    no-op. Any other mode, including ``None``, disables it.
    """

    def __init__(self, mode: str | None = None) -> None:
        self.mode = mode
        self._used = False

    @property
    def enabled(self) -> bool:
        return self.mode == AFTER_CLAIM_ONCE

    def should_fail_now(self) -> bool:
        if self.enabled and not self._used:
            self._used = True
            return True
        return False

    def trigger(self) -> None:
        if self.should_fail_now():
            logger.warning("failpoint triggered mode=%s", self.mode)
            raise FailpointError()

"""
Batched group membership lookup via Microsoft Graph ``checkMemberGroups``.

Background for newcomers:
    When a user is in more groups than fit in a token (the "groups overage"
    case), Entra drops the ``groups`` claim entirely. Instead of paging
    through every group the user belongs to, we only ask about the groups
    this application cares about: ``POST /me/checkMemberGroups`` takes a list
    of candidate group ids and returns the ones the signed-in user is a
    (transitive) member of.

    Graph accepts at most 20 ids per call, so the candidate list is split
    into batches and the batches are sent in parallel. Either every batch
    succeeds and the answers are merged, or the whole lookup fails. A
    half-answered lookup would look exactly like "user is not in the other
    groups" and silently hand out fewer roles than the user is entitled to.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Iterable

import requests

from .config import DEFAULT_GRAPH_BASE, EntraConfig
from .errors import AuthExchangeError, ConfigurationError, MembershipQueryCancelled, MembershipQueryError
from .token_exchange import DelegatedToken

logger = logging.getLogger(__name__)

# Documented Graph limit for checkMemberGroups: "up to 20 groups per request".
MAX_BATCH_SIZE = 20

# How often the join loop wakes up to look at the caller's cancel event.
_CANCEL_POLL_SECONDS = 0.05


def _dedupe(group_ids: Iterable[str]) -> list[str]:
    """Drop exact repeats, keeping first-seen order. Ids are opaque strings."""
    if isinstance(group_ids, str):
        raise TypeError("group_ids must be an iterable of ids, not a single string")
    return list(dict.fromkeys(str(gid) for gid in group_ids))


def partition(group_ids: Iterable[str], batch_size: int = MAX_BATCH_SIZE) -> list[tuple[str, ...]]:
    """
    Split candidate group ids into request-sized batches.

    Duplicates are removed first. Every remaining id lands in exactly one
    batch, no batch exceeds ``batch_size`` and no batch is empty, so an empty
    input yields an empty list.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    ids = _dedupe(group_ids)
    return [tuple(ids[i : i + batch_size]) for i in range(0, len(ids), batch_size)]


class GroupMembershipResolver:
    """
    Resolves which candidate groups the delegated user belongs to.

    The resolver keeps only immutable settings. Each ``resolve_membership``
    call spins up its own short-lived thread pool, so one instance may be
    shared by concurrent requests.
    """

    def __init__(
        self,
        graph_base_url: str = DEFAULT_GRAPH_BASE,
        *,
        timeout: float = 10.0,
        max_concurrency: int = 8,
        batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
            raise ConfigurationError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self._url = f"{graph_base_url.rstrip('/')}/me/checkMemberGroups"
        self._timeout = timeout
        self._max_concurrency = max_concurrency
        self._batch_size = batch_size

    @classmethod
    def from_config(cls, config: EntraConfig) -> GroupMembershipResolver:
        return cls(
            config.graph_base_url,
            timeout=config.http_timeout_seconds,
            max_concurrency=config.graph_max_concurrency,
        )

    def resolve_membership(
        self,
        token: DelegatedToken,
        candidate_groups: Iterable[str],
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> frozenset[str]:
        """
        Return the subset of ``candidate_groups`` the token's user is a member of.

        ``timeout`` is an overall deadline in seconds for all batches;
        ``cancel_event`` lets the caller abort from another thread. Either
        one ends the call with ``MembershipQueryCancelled``.

        Raises:
            AuthExchangeError: the delegated token is expired or Graph
                answered 401 for any batch.
            MembershipQueryError: any batch failed; nothing is returned.
        """
        batches = partition(candidate_groups, self._batch_size)
        if not batches:
            return frozenset()
        if token.is_expired():
            raise AuthExchangeError("Delegated token has expired", error="token_expired")

        deadline = None if timeout is None else time.monotonic() + timeout
        logger.debug("checkMemberGroups dispatch batches=%s", len(batches))

        executor = ThreadPoolExecutor(
            max_workers=min(len(batches), self._max_concurrency),
            thread_name_prefix="checkMemberGroups",
        )
        try:
            futures = [executor.submit(self._check_batch, token, batch) for batch in batches]
            matched = self._join(futures, deadline, cancel_event)
        finally:
            # Don't block on abandoned requests; they finish against their own timeout.
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info("Group membership resolved candidates=%s matched=%s", sum(map(len, batches)), len(matched))
        return matched

    def _join(
        self,
        futures: list[Future[set[str]]],
        deadline: float | None,
        cancel_event: threading.Event | None,
    ) -> frozenset[str]:
        pending = set(futures)
        matched: set[str] = set()
        while pending:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Group membership lookup cancelled pending=%s", len(pending))
                raise MembershipQueryCancelled("Group membership lookup was cancelled")

            wait_for = _CANCEL_POLL_SECONDS if cancel_event is not None else None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info("Group membership lookup timed out pending=%s", len(pending))
                    raise MembershipQueryCancelled("Group membership lookup timed out")
                wait_for = remaining if wait_for is None else min(wait_for, remaining)

            done, pending = wait(pending, timeout=wait_for, return_when=FIRST_EXCEPTION)
            for fut in done:
                # result() re-raises the batch failure; the partial set is dropped with the frame.
                matched.update(fut.result())
        return frozenset(matched)

    def _check_batch(self, token: DelegatedToken, batch: tuple[str, ...]) -> set[str]:
        headers = {**token.authorization_header(), "Content-Type": "application/json"}
        try:
            resp = requests.post(
                self._url,
                headers=headers,
                json={"groupIds": list(batch)},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning("checkMemberGroups request failed: %s", type(e).__name__, exc_info=False)
            raise MembershipQueryError(
                f"checkMemberGroups request failed: {type(e).__name__}",
                batch=batch,
                transient=True,
            ) from e

        status = resp.status_code
        if status == 401:
            logger.info("checkMemberGroups rejected the delegated token")
            raise AuthExchangeError(
                "Graph rejected the delegated token",
                error="invalid_token",
                status_code=status,
            )
        if not 200 <= status < 300:
            logger.warning("checkMemberGroups returned status=%s batch_size=%s", status, len(batch))
            raise MembershipQueryError(
                f"checkMemberGroups returned status={status}",
                batch=batch,
                status_code=status,
                transient=status == 429 or status >= 500,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise MembershipQueryError(
                "checkMemberGroups returned a non-JSON body", batch=batch, status_code=status
            ) from e
        values = body.get("value") if isinstance(body, dict) else None
        if not isinstance(values, list):
            raise MembershipQueryError(
                "checkMemberGroups response has no 'value' list", batch=batch, status_code=status
            )

        # Graph may echo GUIDs in another case: map each answer back to every
        # spelling we sent, and ignore anything we did not ask about.
        asked: dict[str, list[str]] = {}
        for gid in batch:
            asked.setdefault(gid.lower(), []).append(gid)
        matched: set[str] = set()
        for returned in values:
            originals = asked.get(str(returned).lower())
            if not originals:
                logger.debug("checkMemberGroups returned an id outside the batch; ignored")
                continue
            matched.update(originals)
        return matched

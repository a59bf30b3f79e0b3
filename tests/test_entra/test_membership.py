"""Tests for batching and concurrent checkMemberGroups resolution (Graph mocked)."""

import math
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from aad_group_roles.entra.errors import (
    AuthExchangeError,
    ConfigurationError,
    MembershipQueryCancelled,
    MembershipQueryError,
)
from aad_group_roles.entra.membership import MAX_BATCH_SIZE, GroupMembershipResolver, partition
from aad_group_roles.entra.token_exchange import DelegatedToken

GRAPH_BASE = "https://graph.example/v1.0"


def _ids(n: int) -> list[str]:
    return [f"g{i}" for i in range(1, n + 1)]


def _response(status: int = 200, body=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


def _graph(member_ids, *, delays=None, fail_when=None):
    """
    Fake ``requests.post`` for checkMemberGroups.

    ``delays`` maps a group id to seconds to sleep when that id is in the batch;
    ``fail_when`` maps a group id to the response returned for its batch.
    """
    delays = delays or {}
    fail_when = fail_when or {}

    def _post(url, headers=None, json=None, timeout=None):
        asked = json["groupIds"]
        for gid, seconds in delays.items():
            if gid in asked:
                time.sleep(seconds)
        for gid, resp in fail_when.items():
            if gid in asked:
                if isinstance(resp, Exception):
                    raise resp
                return resp
        return _response(200, {"value": [g for g in asked if g in member_ids]})

    return _post


def _resolver(**kwargs) -> GroupMembershipResolver:
    return GroupMembershipResolver(GRAPH_BASE, **kwargs)


# ---- partition --------------------------------------------------------------------


@pytest.mark.parametrize("n", [0, 1, 19, 20, 21, 25, 39, 40, 41, 100, 137])
def test_partition_covers_every_id_once(n):
    ids = _ids(n)
    batches = partition(ids)

    assert len(batches) == math.ceil(n / MAX_BATCH_SIZE)
    assert all(0 < len(b) <= MAX_BATCH_SIZE for b in batches)
    flattened = [gid for b in batches for gid in b]
    assert len(flattened) == len(set(flattened))
    assert set(flattened) == set(ids)


def test_partition_empty_yields_no_batches():
    assert partition([]) == []


def test_partition_boundaries():
    assert [len(b) for b in partition(_ids(20))] == [20]
    assert [len(b) for b in partition(_ids(21))] == [20, 1]


def test_partition_dedupes_exact_repeats_only():
    assert partition(["g1", "g1", "g2"]) == [("g1", "g2")]
    # Ids are opaque: differing case means a different candidate.
    assert partition(["grp-A", "grp-a", "grp-A"]) == [("grp-A", "grp-a")]


def test_partition_accepts_sets_and_generators():
    assert sorted(partition({"a", "b"})[0]) == ["a", "b"]
    assert partition(gid for gid in ["x", "y"]) == [("x", "y")]


def test_partition_rejects_single_string():
    with pytest.raises(TypeError):
        partition("g1")


def test_partition_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        partition(["g1"], batch_size=0)


# ---- construction -----------------------------------------------------------------


def test_resolver_rejects_batch_size_over_graph_limit():
    with pytest.raises(ConfigurationError):
        _resolver(batch_size=MAX_BATCH_SIZE + 1)


def test_resolver_rejects_zero_concurrency():
    with pytest.raises(ConfigurationError):
        _resolver(max_concurrency=0)


def test_resolver_from_config_uses_graph_base(entra_config, delegated_token):
    resolver = GroupMembershipResolver.from_config(entra_config)
    with patch("aad_group_roles.entra.membership.requests.post", side_effect=_graph({"g1"})) as mock_post:
        resolver.resolve_membership(delegated_token, ["g1"])
    assert mock_post.call_args.args[0] == "https://graph.microsoft.com/v1.0/me/checkMemberGroups"


# ---- resolve_membership -----------------------------------------------------------


@patch("aad_group_roles.entra.membership.requests.post")
def test_empty_candidates_make_no_request(mock_post, delegated_token):
    assert _resolver().resolve_membership(delegated_token, []) == frozenset()
    mock_post.assert_not_called()


@patch("aad_group_roles.entra.membership.requests.post")
def test_twenty_five_candidates_two_batches(mock_post, delegated_token):
    mock_post.side_effect = _graph({"g3", "g17", "g24"})

    result = _resolver().resolve_membership(delegated_token, _ids(25))

    assert result == frozenset({"g3", "g17", "g24"})
    assert mock_post.call_count == 2
    sent = sorted(len(c.kwargs["json"]["groupIds"]) for c in mock_post.call_args_list)
    assert sent == [5, 20]
    for c in mock_post.call_args_list:
        assert c.args[0] == f"{GRAPH_BASE}/me/checkMemberGroups"
        assert c.kwargs["headers"]["Authorization"] == "Bearer delegated-graph-token"


@patch("aad_group_roles.entra.membership.requests.post")
def test_duplicates_behave_like_deduplicated_input(mock_post, delegated_token):
    mock_post.side_effect = _graph({"g1"})
    resolver = _resolver()

    with_dupes = resolver.resolve_membership(delegated_token, ["g1", "g1", "g2"])
    first_calls = [c.kwargs["json"] for c in mock_post.call_args_list]
    mock_post.reset_mock()
    without = resolver.resolve_membership(delegated_token, ["g1", "g2"])
    second_calls = [c.kwargs["json"] for c in mock_post.call_args_list]

    assert with_dupes == without == frozenset({"g1"})
    assert first_calls == second_calls == [{"groupIds": ["g1", "g2"]}]


@patch("aad_group_roles.entra.membership.requests.post")
def test_result_is_subset_of_candidates(mock_post, delegated_token):
    """Ids Graph returns that we did not ask about are dropped; case is mapped back."""
    mock_post.return_value = _response(200, {"value": ["G3", "not-asked", "g9"]})

    result = _resolver().resolve_membership(delegated_token, ["g3", "g9", "g10"])

    assert result == frozenset({"g3", "g9"})


@patch("aad_group_roles.entra.membership.requests.post")
def test_case_variant_candidates_are_kept_distinct(mock_post, delegated_token):
    mock_post.return_value = _response(200, {"value": ["grp-a"]})

    result = _resolver().resolve_membership(delegated_token, ["grp-A", "grp-a"])

    assert result == frozenset({"grp-A", "grp-a"})
    assert mock_post.call_args.kwargs["json"] == {"groupIds": ["grp-A", "grp-a"]}


@patch("aad_group_roles.entra.membership.requests.post")
def test_one_failed_batch_fails_everything(mock_post, delegated_token):
    # The failing batch answers last so the successful one has already completed.
    mock_post.side_effect = _graph(set(_ids(40)), delays={"g25": 0.1}, fail_when={"g25": _response(500, {})})

    with pytest.raises(MembershipQueryError) as exc_info:
        _resolver().resolve_membership(delegated_token, _ids(40))

    err = exc_info.value
    assert err.status_code == 500
    assert err.transient is True
    assert "g25" in err.batch
    assert mock_post.call_count == 2


@patch("aad_group_roles.entra.membership.requests.post")
def test_throttled_batch_is_transient(mock_post, delegated_token):
    mock_post.return_value = _response(429, {})
    with pytest.raises(MembershipQueryError) as exc_info:
        _resolver().resolve_membership(delegated_token, ["g1"])
    assert exc_info.value.transient is True


@patch("aad_group_roles.entra.membership.requests.post")
def test_bad_request_is_not_transient(mock_post, delegated_token):
    mock_post.return_value = _response(400, {"error": {"code": "Request_BadRequest"}})
    with pytest.raises(MembershipQueryError) as exc_info:
        _resolver().resolve_membership(delegated_token, ["not-a-guid"])
    assert exc_info.value.status_code == 400
    assert exc_info.value.transient is False


@patch("aad_group_roles.entra.membership.requests.post")
def test_network_error_is_transient_and_chained(mock_post, delegated_token):
    mock_post.side_effect = requests.ConnectionError("boom")
    with pytest.raises(MembershipQueryError) as exc_info:
        _resolver().resolve_membership(delegated_token, ["g1"])
    assert exc_info.value.transient is True
    assert isinstance(exc_info.value.__cause__, requests.ConnectionError)


@patch("aad_group_roles.entra.membership.requests.post")
def test_unauthorized_passes_through_as_auth_error(mock_post, delegated_token):
    mock_post.return_value = _response(401, {"error": {"code": "InvalidAuthenticationToken"}})
    with pytest.raises(AuthExchangeError) as exc_info:
        _resolver().resolve_membership(delegated_token, ["g1"])
    assert exc_info.value.status_code == 401


@patch("aad_group_roles.entra.membership.requests.post")
def test_non_json_body_fails(mock_post, delegated_token):
    mock_post.return_value = _response(200, ValueError("not json"))
    with pytest.raises(MembershipQueryError) as exc_info:
        _resolver().resolve_membership(delegated_token, ["g1"])
    assert exc_info.value.transient is False


@patch("aad_group_roles.entra.membership.requests.post")
def test_missing_value_list_fails(mock_post, delegated_token):
    mock_post.return_value = _response(200, {"something": []})
    with pytest.raises(MembershipQueryError):
        _resolver().resolve_membership(delegated_token, ["g1"])


@patch("aad_group_roles.entra.membership.requests.post")
def test_expired_delegated_token_rejected_without_request(mock_post):
    expired = DelegatedToken(access_token="old", expires_on=time.time() - 1)
    with pytest.raises(AuthExchangeError):
        _resolver().resolve_membership(expired, ["g1"])
    mock_post.assert_not_called()


@patch("aad_group_roles.entra.membership.requests.post")
def test_single_worker_still_resolves_all_batches(mock_post, delegated_token):
    mock_post.side_effect = _graph({"g1", "g45"})
    result = _resolver(max_concurrency=1).resolve_membership(delegated_token, _ids(50))
    assert result == frozenset({"g1", "g45"})
    assert mock_post.call_count == 3


# ---- concurrency ------------------------------------------------------------------


@patch("aad_group_roles.entra.membership.requests.post")
def test_batches_run_concurrently(mock_post, delegated_token):
    """Wall clock is bounded by the slower batch, not the sum of both."""
    mock_post.side_effect = _graph({"g1", "g40"}, delays={"g1": 0.6, "g21": 0.4})

    started = time.monotonic()
    result = _resolver().resolve_membership(delegated_token, _ids(40))
    elapsed = time.monotonic() - started

    assert result == frozenset({"g1", "g40"})
    assert 0.6 <= elapsed < 0.9


@patch("aad_group_roles.entra.membership.requests.post")
def test_failure_does_not_wait_for_slow_batches(mock_post, delegated_token):
    mock_post.side_effect = _graph(
        set(),
        delays={"g1": 1.0},
        fail_when={"g21": requests.Timeout("read timed out")},
    )

    started = time.monotonic()
    with pytest.raises(MembershipQueryError):
        _resolver().resolve_membership(delegated_token, _ids(40))
    assert time.monotonic() - started < 0.8


@patch("aad_group_roles.entra.membership.requests.post")
def test_deadline_cancels_lookup(mock_post, delegated_token):
    mock_post.side_effect = _graph({"g1"}, delays={"g1": 1.0})

    started = time.monotonic()
    with pytest.raises(MembershipQueryCancelled) as exc_info:
        _resolver().resolve_membership(delegated_token, _ids(5), timeout=0.2)
    assert time.monotonic() - started < 0.8
    assert isinstance(exc_info.value, MembershipQueryError)


@patch("aad_group_roles.entra.membership.requests.post")
def test_cancel_event_aborts_lookup(mock_post, delegated_token):
    mock_post.side_effect = _graph({"g1"}, delays={"g1": 1.0})
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()

    started = time.monotonic()
    with pytest.raises(MembershipQueryCancelled):
        _resolver().resolve_membership(delegated_token, _ids(5), cancel_event=cancel)
    assert time.monotonic() - started < 0.8


@patch("aad_group_roles.entra.membership.requests.post")
def test_cancel_event_unset_does_not_interfere(mock_post, delegated_token):
    mock_post.side_effect = _graph({"g2"}, delays={"g1": 0.15})
    result = _resolver().resolve_membership(delegated_token, _ids(3), cancel_event=threading.Event(), timeout=5)
    assert result == frozenset({"g2"})

from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from hypothesis import given, settings
from hypothesis import strategies as st

from app.core.exceptions import NoEligibleAccountError, RefreshFailedError
from app.services.account_pool import (
    AccountPoolManager,
    AccountStatus,
    DispatchOutcome,
    ModelQuota,
    PoolAccount,
    PoolPolicy,
    QuotaSnapshot,
    SelectionPolicy,
    parse_quota_snapshot,
)
from app.services.antigravity_client import TokenGrant

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self, accounts: Optional[List[PoolAccount]] = None, *, fail_save: bool = False):
        self.accounts = list(accounts or [])
        self.saved: List[int] = []
        self.deleted: List[int] = []
        self.snapshots: Dict[int, QuotaSnapshot] = {}
        self.fail_save = fail_save
        self._next_id = 100

    async def load_all(self) -> List[PoolAccount]:
        return list(self.accounts)

    async def insert(self, account: PoolAccount) -> PoolAccount:
        self._next_id += 1
        account.id = self._next_id
        return account

    async def save(self, account: PoolAccount) -> None:
        if self.fail_save:
            raise RuntimeError("db down")
        self.saved.append(account.id)

    async def delete(self, account_id: int) -> None:
        self.deleted.append(account_id)

    async def save_quota_snapshot(self, account_id: int, snapshot: QuotaSnapshot) -> None:
        self.snapshots[account_id] = snapshot


class FakeUpstream:
    def __init__(self, *, fail_tokens: Optional[Dict[str, RefreshFailedError]] = None, delay: float = 0.0):
        self.fail_tokens = fail_tokens or {}
        self.delay = delay
        self.refresh_calls: List[str] = []
        self.quota_payload: dict = {}

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if refresh_token in self.fail_tokens:
            raise self.fail_tokens[refresh_token]
        return TokenGrant(access_token=f"at-{refresh_token}-{len(self.refresh_calls)}", expires_in=3600)

    async def fetch_available_models(self, access_token: str, project: Optional[str]) -> dict:
        return self.quota_payload


def _account(account_id: int, **kwargs) -> PoolAccount:
    kwargs.setdefault("email", f"user{account_id}@example.com")
    kwargs.setdefault("refresh_token", f"rt{account_id}")
    return PoolAccount(id=account_id, **kwargs)


def _pool(accounts: List[PoolAccount], upstream: Optional[FakeUpstream] = None, **policy) -> AccountPoolManager:
    pool = AccountPoolManager(
        FakeStore(accounts),
        upstream or FakeUpstream(),
        PoolPolicy(**policy),
        clock=lambda: NOW,
    )
    asyncio.run(pool.load())
    return pool


# ---------------------------------------------------------------------------
# 选择
# ---------------------------------------------------------------------------

_account_state = st.fixed_dictionaries(
    {
        "status": st.sampled_from(list(AccountStatus)),
        "token_valid": st.booleans(),
        "quota_remaining": st.one_of(st.none(), st.floats(min_value=0.0, max_value=1.0)),
    }
)


class TestSelection(unittest.TestCase):
    @given(states=st.lists(_account_state, min_size=1, max_size=8), policy=st.sampled_from(list(SelectionPolicy)))
    @settings(max_examples=100)
    def test_selection_only_returns_eligible_accounts(self, states, policy) -> None:
        accounts = [_account(i + 1, **state) for i, state in enumerate(states)]
        pool = _pool(accounts, selection=policy)
        expected = [
            a for a in accounts
            if a.status is AccountStatus.ACTIVE and a.token_valid and (a.quota_remaining is None or a.quota_remaining > 0)
        ]
        if not expected:
            with self.assertRaises(NoEligibleAccountError):
                pool.select_account("gemini-2.5-pro")
            return
        chosen = pool.select_account("gemini-2.5-pro")
        self.assertIs(chosen.status, AccountStatus.ACTIVE)
        self.assertTrue(chosen.token_valid)
        self.assertIn(chosen.id, [a.id for a in expected])
        self.assertEqual(chosen.last_used_at, NOW)

    def test_all_disabled_raises(self) -> None:
        pool = _pool([_account(1, status=AccountStatus.DISABLED), _account(2, status=AccountStatus.ERROR)])
        with self.assertRaises(NoEligibleAccountError):
            pool.select_account(None)

    def test_quota_policy_prefers_most_remaining(self) -> None:
        pool = _pool([_account(1, quota_remaining=0.2), _account(2, quota_remaining=0.9)])
        self.assertEqual(pool.select_account(None).id, 2)

    def test_lru_policy_prefers_least_recently_used(self) -> None:
        pool = _pool(
            [
                _account(1, quota_remaining=0.9, last_used_at=NOW - timedelta(minutes=1)),
                _account(2, quota_remaining=0.1, last_used_at=NOW - timedelta(hours=1)),
            ],
            selection=SelectionPolicy.LRU,
        )
        self.assertEqual(pool.select_account(None).id, 2)

    def test_exclude_skips_accounts(self) -> None:
        pool = _pool([_account(1), _account(2)])
        self.assertEqual(pool.select_account(None, exclude=[1]).id, 2)
        with self.assertRaises(NoEligibleAccountError):
            pool.select_account(None, exclude=[1, 2])

    def test_model_quota_takes_precedence_and_expires(self) -> None:
        exhausted = _account(
            1,
            quota_remaining=0.8,
            model_quotas={"m": ModelQuota("m", 0.0, reset_at=NOW + timedelta(minutes=5))},
        )
        expired = _account(
            2,
            model_quotas={"m": ModelQuota("m", 0.0, reset_at=NOW - timedelta(minutes=5))},
        )
        pool = _pool([exhausted, expired])
        self.assertFalse(pool.is_eligible(exhausted, "m"))
        self.assertTrue(pool.is_eligible(exhausted, "other"))
        self.assertTrue(pool.is_eligible(expired, "m"))
        self.assertEqual(pool.select_account("m").id, 2)


# ---------------------------------------------------------------------------
# token 刷新
# ---------------------------------------------------------------------------


class TestTokenRefresh(unittest.TestCase):
    def test_fresh_token_is_reused(self) -> None:
        upstream = FakeUpstream()
        account = _account(1, access_token="cached", access_token_expiry=NOW + timedelta(hours=1))
        pool = _pool([account], upstream)
        self.assertEqual(asyncio.run(pool.ensure_fresh_token(account)), "cached")
        self.assertEqual(upstream.refresh_calls, [])

    def test_token_inside_skew_is_refreshed(self) -> None:
        upstream = FakeUpstream()
        account = _account(1, access_token="old", access_token_expiry=NOW + timedelta(seconds=60))
        pool = _pool([account], upstream)
        token = asyncio.run(pool.ensure_fresh_token(account))
        self.assertEqual(token, "at-rt1-1")
        self.assertEqual(account.access_token_expiry, NOW + timedelta(seconds=3600))
        self.assertEqual(account.last_refresh_at, NOW)

    def test_concurrent_refreshes_share_one_upstream_call(self) -> None:
        upstream = FakeUpstream(delay=0.01)
        account = _account(1)
        pool = _pool([account], upstream)

        async def _run():
            return await asyncio.gather(*(pool.ensure_fresh_token(account) for _ in range(5)))

        tokens = asyncio.run(_run())
        self.assertEqual(len(upstream.refresh_calls), 1)
        self.assertEqual(set(tokens), {"at-rt1-1"})

    def test_refresh_of_different_accounts_is_independent(self) -> None:
        upstream = FakeUpstream(delay=0.01)
        first, second = _account(1), _account(2)
        pool = _pool([first, second], upstream)

        async def _run():
            return await asyncio.gather(pool.ensure_fresh_token(first), pool.ensure_fresh_token(second))

        asyncio.run(_run())
        self.assertEqual(sorted(upstream.refresh_calls), ["rt1", "rt2"])

    def test_failed_refresh_never_returns_stale_token(self) -> None:
        upstream = FakeUpstream(fail_tokens={"rt1": RefreshFailedError("token refresh failed: HTTP 500")})
        account = _account(1, access_token="stale", access_token_expiry=NOW - timedelta(minutes=1))
        pool = _pool([account], upstream)

        with self.assertRaises(RefreshFailedError):
            asyncio.run(pool.ensure_fresh_token(account))
        self.assertIsNone(account.access_token)
        self.assertEqual(account.error_count, 1)
        self.assertTrue(account.token_valid)

    def test_invalid_grant_marks_token_invalid(self) -> None:
        upstream = FakeUpstream(fail_tokens={"rt1": RefreshFailedError("invalid_grant", invalid_grant=True)})
        account = _account(1)
        pool = _pool([account], upstream)
        with self.assertRaises(RefreshFailedError):
            asyncio.run(pool.ensure_fresh_token(account))
        self.assertFalse(account.token_valid)
        self.assertFalse(pool.is_eligible(account, None))

    def test_rotated_refresh_token_is_kept(self) -> None:
        class RotatingUpstream(FakeUpstream):
            async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
                return TokenGrant(access_token="new-at", expires_in=60, refresh_token="rt-rotated")

        account = _account(1)
        pool = _pool([account], RotatingUpstream())
        asyncio.run(pool.ensure_fresh_token(account, force=True))
        self.assertEqual(account.refresh_token, "rt-rotated")

    def test_repr_hides_credentials(self) -> None:
        account = _account(1, access_token="secret-at")
        self.assertNotIn("secret-at", repr(account))
        self.assertNotIn("rt1", repr(account))
        self.assertNotIn("refresh_token", account.to_public_dict())
        self.assertNotIn("access_token", account.to_public_dict())


# ---------------------------------------------------------------------------
# 结果记录 / 状态迁移
# ---------------------------------------------------------------------------


class TestRecordOutcome(unittest.TestCase):
    def test_failures_reach_threshold_then_error(self) -> None:
        account = _account(1)
        pool = _pool([account], error_threshold=3)
        for i in range(2):
            asyncio.run(pool.record_outcome(account, DispatchOutcome(success=False, error=f"boom {i}")))
            self.assertIs(account.status, AccountStatus.ACTIVE)
        asyncio.run(pool.record_outcome(account, DispatchOutcome(success=False, error="boom 2")))
        self.assertIs(account.status, AccountStatus.ERROR)
        self.assertEqual(account.error_count, 3)
        self.assertEqual(account.last_error, "boom 2")

    def test_success_resets_errors_and_reactivates(self) -> None:
        account = _account(1, status=AccountStatus.ERROR, error_count=7, last_error="x")
        pool = _pool([account])
        asyncio.run(pool.record_outcome(account, DispatchOutcome(success=True, quota_remaining=0.4)))
        self.assertIs(account.status, AccountStatus.ACTIVE)
        self.assertEqual(account.error_count, 0)
        self.assertIsNone(account.last_error)
        self.assertEqual(account.quota_remaining, 0.4)

    def test_success_does_not_enable_disabled_account(self) -> None:
        account = _account(1, status=AccountStatus.DISABLED)
        pool = _pool([account])
        asyncio.run(pool.record_outcome(account, DispatchOutcome(success=True)))
        self.assertIs(account.status, AccountStatus.DISABLED)

    def test_quota_exhaustion_is_not_an_error(self) -> None:
        account = _account(1)
        pool = _pool([account], error_threshold=1)
        asyncio.run(
            pool.record_outcome(
                account,
                DispatchOutcome(success=False, model="m", quota_exhausted=True, retry_after_seconds=30, error="429"),
            )
        )
        self.assertEqual(account.error_count, 0)
        self.assertIs(account.status, AccountStatus.ACTIVE)
        self.assertEqual(account.model_quotas["m"].reset_at, NOW + timedelta(seconds=30))
        self.assertFalse(pool.is_eligible(account, "m"))
        self.assertTrue(pool.is_eligible(account, "other"))

    def test_last_error_is_truncated(self) -> None:
        account = _account(1)
        pool = _pool([account])
        asyncio.run(pool.record_outcome(account, DispatchOutcome(success=False, error="x" * 2000)))
        self.assertTrue(account.last_error.startswith("x" * 500))
        self.assertLess(len(account.last_error), 600)

    def test_store_failure_does_not_break_recording(self) -> None:
        account = _account(1)
        pool = AccountPoolManager(FakeStore([account], fail_save=True), FakeUpstream(), clock=lambda: NOW)
        asyncio.run(pool.load())
        with self.assertLogs("app.services.account_pool", level="WARNING"):
            asyncio.run(pool.record_outcome(account, DispatchOutcome(success=False, error="boom")))
        self.assertEqual(account.error_count, 1)


# ---------------------------------------------------------------------------
# 额度
# ---------------------------------------------------------------------------


class TestQuota(unittest.TestCase):
    def test_parse_quota_snapshot(self) -> None:
        snapshot = parse_quota_snapshot(
            {
                "models": {
                    "gemini-2.5-pro": {
                        "displayName": "Gemini 2.5 Pro",
                        "quotaInfo": {"remainingFraction": 0.75, "resetTime": "2026-01-02T00:00:00Z"},
                    },
                    "claude-sonnet-4-5": {"quotaInfo": {"resetTime": "2026-01-01T18:00:00Z"}},
                    "no-quota": {"displayName": "x"},
                }
            },
            now=NOW,
        )
        self.assertEqual(set(snapshot.models), {"gemini-2.5-pro", "claude-sonnet-4-5"})
        self.assertEqual(snapshot.models["claude-sonnet-4-5"].remaining_fraction, 0.0)
        self.assertEqual(snapshot.overall_quota, 0.0)
        self.assertEqual(snapshot.reset_time, datetime(2026, 1, 1, 18, 0, tzinfo=timezone.utc))
        body = snapshot.to_dict()
        self.assertEqual(body["models"]["gemini-2.5-pro"]["displayName"], "Gemini 2.5 Pro")
        self.assertEqual(body["models"]["gemini-2.5-pro"]["remainingFraction"], 0.75)

    def test_parse_empty_snapshot(self) -> None:
        snapshot = parse_quota_snapshot({}, now=NOW)
        self.assertEqual(snapshot.models, {})
        self.assertIsNone(snapshot.overall_quota)
        self.assertIsNone(snapshot.reset_time)

    def test_fetch_quota_updates_account_but_not_status(self) -> None:
        upstream = FakeUpstream()
        upstream.quota_payload = {"models": {"m": {"quotaInfo": {"remainingFraction": 0.5}}}}
        account = _account(1, status=AccountStatus.DISABLED)
        pool = _pool([account], upstream)

        snapshot = asyncio.run(pool.fetch_quota(1))
        self.assertEqual(snapshot.overall_quota, 0.5)
        self.assertEqual(account.quota_remaining, 0.5)
        self.assertEqual(account.quota_updated_at, NOW)
        self.assertIs(account.status, AccountStatus.DISABLED)
        self.assertIn(1, pool.store.snapshots)

    def test_schedule_quota_refresh_skips_recent_snapshot(self) -> None:
        account = _account(1, quota_updated_at=NOW - timedelta(seconds=10))
        pool = _pool([account])

        async def _run():
            return pool.schedule_quota_refresh(account)

        self.assertFalse(asyncio.run(_run()))


# ---------------------------------------------------------------------------
# 管理操作
# ---------------------------------------------------------------------------


class TestAdminOperations(unittest.TestCase):
    def test_create_and_duplicate(self) -> None:
        pool = _pool([])
        created = asyncio.run(pool.create("a@example.com", "rt-a", project_id="p", access_token="at", expires_in=60))
        self.assertEqual(created.id, 101)
        self.assertEqual(created.access_token_expiry, NOW + timedelta(seconds=60))
        self.assertEqual([a.id for a in pool.list_accounts()], [101])
        with self.assertRaises(ValueError):
            asyncio.run(pool.create("a@example.com", "rt-b"))
        with self.assertRaises(ValueError):
            asyncio.run(pool.create("", "rt-c"))

    def test_set_status(self) -> None:
        account = _account(1, status=AccountStatus.ERROR, error_count=5)
        pool = _pool([account])
        asyncio.run(pool.set_status(1, AccountStatus.ACTIVE))
        self.assertIs(account.status, AccountStatus.ACTIVE)
        self.assertEqual(account.error_count, 0)
        with self.assertRaises(ValueError):
            asyncio.run(pool.set_status(1, AccountStatus.ERROR))
        with self.assertRaises(ValueError):
            asyncio.run(pool.set_status(99, AccountStatus.DISABLED))

    def test_set_status_survives_store_failure(self) -> None:
        account = _account(1)
        pool = AccountPoolManager(FakeStore([account], fail_save=True), FakeUpstream(), clock=lambda: NOW)
        asyncio.run(pool.load())
        with self.assertLogs("app.services.account_pool", level="WARNING"):
            updated = asyncio.run(pool.set_status(1, AccountStatus.DISABLED))
        self.assertIs(updated.status, AccountStatus.DISABLED)
        with self.assertRaises(NoEligibleAccountError):
            pool.select_account("gemini-2.5-pro")

    def test_delete(self) -> None:
        pool = _pool([_account(1), _account(2)])
        asyncio.run(pool.delete(1))
        self.assertEqual([a.id for a in pool.list_accounts()], [2])
        self.assertEqual(pool.store.deleted, [1])

    def test_refresh_account_reactivates_error_account(self) -> None:
        account = _account(1, status=AccountStatus.ERROR, error_count=5, last_error="x")
        pool = _pool([account])
        asyncio.run(pool.refresh_account(1))
        self.assertIs(account.status, AccountStatus.ACTIVE)
        self.assertEqual(account.error_count, 0)

    def test_refresh_all_collects_failures(self) -> None:
        failing = {f"rt{i}": RefreshFailedError(f"refresh failed {i}") for i in (2, 4)}
        pool = _pool([_account(i) for i in range(1, 6)], FakeUpstream(fail_tokens=failing))
        result = asyncio.run(pool.refresh_all())

        self.assertEqual(result["total"], 5)
        self.assertEqual(result["failed"], 2)
        self.assertEqual(result["success"], 3)
        failed_ids = [r["id"] for r in result["results"] if not r["success"]]
        self.assertEqual(failed_ids, [2, 4])
        self.assertEqual(result["results"][1]["error"], "refresh failed 2")

    def test_count_by_status(self) -> None:
        pool = _pool([_account(1), _account(2, status=AccountStatus.DISABLED), _account(3, status=AccountStatus.ERROR)])
        self.assertEqual(pool.count_by_status(), {"active": 1, "disabled": 1, "error": 1})


if __name__ == "__main__":
    unittest.main()

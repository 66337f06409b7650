"""Batch price reduction pass.

``run_reduction_pass`` is the single entry point the scheduler calls. It
finds the listings that are due, groups them by owner, and for each owner:

1. obtains an access token (one recovery attempt on failure; otherwise the
   error is recorded on the account and the owner is skipped this cycle);
2. evaluates every due listing with the decision engine;
3. pushes accepted prices to eBay, updates the listing and writes a
   ``PriceReductionLog`` row.

Owners are processed concurrently, each with its own DB session. A failure
for one listing or one owner never aborts the rest of the pass.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from repricer.config import settings
from repricer.models_sqlalchemy import SessionLocal
from repricer.models_sqlalchemy.models import Listing, PriceReductionLog, User
from repricer.services.competitive_pricing_service import (
    MarketAnalysis,
    competitive_pricing_service,
    no_matches,
)
from repricer.services.ebay_account_service import ebay_account_service
from repricer.services.ebay_api_client import BrowseAuthError
from repricer.services.ebay_price_update import PriceUpdateError, update_listing_price
from repricer.services.ebay_token_service import EbayTokenService
from repricer.services.price_reduction_engine import ReductionDecision, price_reduction_engine
from repricer.services.token_cache import AccessTokenCache
from repricer.services.token_errors import TokenError
from repricer.utils.logger import logger


SessionFactory = Callable[[], Session]


def _eligible_filter(query, now: datetime):
    return query.filter(
        Listing.reduction_enabled.is_(True),
        Listing.listing_status == "active",
        Listing.end_time.isnot(None),
        Listing.end_time > now,
        or_(Listing.next_reduction_at.is_(None), Listing.next_reduction_at <= now),
    )


def find_due_user_ids(db: Session, now: datetime, user_id: Optional[str] = None) -> List[str]:
    query = _eligible_filter(db.query(Listing.user_id), now)
    if user_id:
        query = query.filter(Listing.user_id == user_id)
    return sorted({row[0] for row in query.distinct().all()})


def write_reduction_log(
    db: Session,
    listing: Listing,
    decision: ReductionDecision,
    reduction_type: str,
    now: datetime,
) -> PriceReductionLog:
    old_price = decision.current_price
    new_price = decision.new_price
    amount = old_price - new_price
    percentage = (amount / old_price * Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    entry = PriceReductionLog(
        user_id=listing.user_id,
        listing_id=listing.id,
        ebay_item_id=listing.ebay_item_id,
        sku=listing.sku,
        title=listing.title,
        original_price=old_price,
        reduced_price=new_price,
        reduction_amount=amount,
        reduction_percentage=percentage,
        reduction_type=reduction_type,
        strategy=decision.strategy,
        reason=decision.reason,
        match_tier=decision.match_tier,
        created_at=now,
    )
    db.add(entry)
    return entry


def prune_reduction_logs(db: Session, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
    now = now or datetime.now(timezone.utc)
    days = settings.PRICE_REDUCTION_LOG_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)
    deleted = (
        db.query(PriceReductionLog)
        .filter(PriceReductionLog.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("[reduction] pruned %s log rows older than %s", deleted, cutoff.isoformat())
    return deleted


class _UserPass:
    """Processes the due listings of one user inside its own session."""

    def __init__(
        self,
        db: Session,
        user_id: str,
        *,
        now: datetime,
        dry_run: bool,
        reduction_type: str,
        cache: Optional[AccessTokenCache],
    ):
        self.db = db
        self.user_id = user_id
        self.now = now
        self.dry_run = dry_run
        self.reduction_type = reduction_type
        self.token_service = EbayTokenService(db, user_id, cache=cache)
        self.counts: Counter = Counter()
        self.errors: List[Dict[str, Any]] = []
        self.details: List[Dict[str, Any]] = []
        self._own_seller_id: Optional[str] = None

    async def _acquire_token(self) -> Optional[str]:
        try:
            return await self.token_service.get_access_token()
        except TokenError as exc:
            if await self.token_service.attempt_recovery(exc):
                return await self.token_service.get_access_token()
            logger.warning(
                "[reduction] skipping user=%s this cycle: %s (%s)",
                self.user_id, exc.code.value, exc.action.value,
            )
            ebay_account_service.record_token_error(self.db, self.user_id, exc.code.value, exc.message)
            self.errors.append({"user_id": self.user_id, **exc.to_dict()})
            return None

    async def _market_lookup(self, listing: Listing) -> MarketAnalysis:
        # A token Browse rejects is evicted and replaced once, then the search is retried.
        for attempt in (1, 2):
            try:
                search_token = await self.token_service.get_search_token()
            except TokenError as exc:
                logger.info("[reduction] no search token for user=%s: %s", self.user_id, exc.code.value)
                return no_matches()
            try:
                return await competitive_pricing_service.search(
                    listing, search_token, own_seller_id=self._own_seller_id
                )
            except BrowseAuthError:
                logger.warning(
                    "[reduction] Browse rejected search token for user=%s (attempt %s)", self.user_id, attempt
                )
                try:
                    self.token_service.evict_search_token()
                except TokenError:
                    return no_matches()
        return no_matches()

    async def _evaluate_and_push(self, listing: Listing, access_token: str) -> ReductionDecision:
        decision = await price_reduction_engine.evaluate(listing, now=self.now, market_lookup=self._market_lookup)
        if decision.should_reduce and not self.dry_run:
            await update_listing_price(access_token, listing, decision.new_price)
        return decision

    async def run(self) -> None:
        access_token = await self._acquire_token()
        if access_token is None:
            self.counts["users_skipped"] += 1
            return

        self.counts["users_processed"] += 1
        account = ebay_account_service.get_account(self.db, self.user_id)
        self._own_seller_id = account.ebay_user_id if account is not None else None

        listings = (
            _eligible_filter(self.db.query(Listing), self.now)
            .filter(Listing.user_id == self.user_id)
            .order_by(Listing.end_time.asc())
            .all()
        )

        for listing in listings:
            await self._process_listing(listing, access_token)

    async def _process_listing(self, listing: Listing, access_token: str) -> None:
        self.counts["listings_evaluated"] += 1
        try:
            decision = await asyncio.wait_for(
                self._evaluate_and_push(listing, access_token),
                timeout=settings.LISTING_EVALUATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            self._fail(listing, "TIMEOUT", "Listing evaluation timed out; retrying next pass")
            return
        except PriceUpdateError as exc:
            self._fail(listing, "PRICE_UPDATE_FAILED", str(exc))
            return
        except Exception as exc:
            logger.exception("[reduction] unexpected error for listing=%s", listing.id)
            self._fail(listing, "UNEXPECTED_ERROR", f"{type(exc).__name__}: {exc}")
            return

        detail = {"listing_id": listing.id, **decision.to_dict()}
        if self.dry_run:
            self.details.append(detail)
            if decision.should_reduce:
                self.counts["listings_reduced"] += 1
            return

        if not decision.should_reduce:
            self.details.append(detail)
            # Offer id / source may have been discovered without a reduction.
            self.db.commit()
            return

        price_reduction_engine.apply_decision(listing, decision, now=self.now)
        write_reduction_log(self.db, listing, decision, self.reduction_type, self.now)
        self.db.commit()
        self.counts["listings_reduced"] += 1
        self.details.append(detail)

    def _fail(self, listing: Listing, code: str, message: str) -> None:
        self.db.rollback()
        logger.warning("[reduction] listing=%s failed: %s %s", listing.id, code, message)
        self.counts["listings_failed"] += 1
        self.errors.append({"user_id": self.user_id, "listing_id": listing.id, "code": code, "message": message})


async def run_reduction_pass(
    *,
    session_factory: Optional[SessionFactory] = None,
    dry_run: bool = False,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
    reduction_type: str = "scheduled",
    cache: Optional[AccessTokenCache] = None,
) -> Dict[str, Any]:
    """Run one reduction pass over every due listing and return a summary."""
    session_factory = session_factory or SessionLocal
    now = now or datetime.now(timezone.utc)
    started_at = datetime.now(timezone.utc)

    counts: Counter = Counter()
    errors: List[Dict[str, Any]] = []
    details: List[Dict[str, Any]] = []

    db = session_factory()
    try:
        user_ids = find_due_user_ids(db, now, user_id=user_id)
        vacation = {
            row[0]
            for row in db.query(User.id).filter(User.id.in_(user_ids), User.vacation_mode.is_(True)).all()
        } if user_ids else set()
    finally:
        db.close()

    for uid in sorted(vacation):
        logger.info("[reduction] user=%s is in vacation mode, skipping", uid)
    counts["users_skipped"] += len(vacation)
    active_users = [uid for uid in user_ids if uid not in vacation]

    logger.info(
        "[reduction] pass start users=%s vacation=%s dry_run=%s",
        len(active_users), len(vacation), dry_run,
    )

    semaphore = asyncio.Semaphore(max(1, settings.PRICE_REDUCTION_USER_CONCURRENCY))

    async def _run_user(uid: str) -> _UserPass:
        async with semaphore:
            user_db = session_factory()
            user_pass = _UserPass(
                user_db, uid, now=now, dry_run=dry_run, reduction_type=reduction_type, cache=cache,
            )
            try:
                await user_pass.run()
            except Exception as exc:
                user_db.rollback()
                logger.exception("[reduction] user=%s pass failed", uid)
                user_pass.counts["users_failed"] += 1
                user_pass.errors.append({"user_id": uid, "code": "UNEXPECTED_ERROR", "message": str(exc)})
            finally:
                user_db.close()
            return user_pass

    for user_pass in await asyncio.gather(*(_run_user(uid) for uid in active_users)):
        counts.update(user_pass.counts)
        errors.extend(user_pass.errors)
        details.extend(user_pass.details)

    logs_pruned = 0
    if not dry_run:
        db = session_factory()
        try:
            logs_pruned = prune_reduction_logs(db, now=now)
        finally:
            db.close()

    summary = {
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc),
        "dry_run": dry_run,
        "users_processed": counts["users_processed"],
        "users_skipped": counts["users_skipped"],
        "listings_evaluated": counts["listings_evaluated"],
        "listings_reduced": counts["listings_reduced"],
        "listings_failed": counts["listings_failed"],
        "logs_pruned": logs_pruned,
        "errors": errors,
        "details": details,
    }
    logger.info(
        "[reduction] pass done users=%s evaluated=%s reduced=%s failed=%s",
        summary["users_processed"], summary["listings_evaluated"],
        summary["listings_reduced"], summary["listings_failed"],
    )
    return summary

"""
Publish Coordinator: drives a post's platform sub-posts one at a time.

Every sub-post goes through the same steps regardless of the entry point
(publish-now, retry, scheduled run):

  resolve account -> claim (compare-and-swap to `publishing`) -> decrypt
  credential -> adapter.publish -> record outcome + JobEvent -> commit

Each sub-post outcome is committed before the next one starts, so a failure
(or crash) on one platform never rolls back another platform's result.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import (
    ConnectedAccount,
    JobEvent,
    PlatformPost,
    PlatformPostStatus,
    Post,
    PostStatus,
    utcnow,
)
from app.services.account_service import load_accounts, resolve_account
from app.services.errors import (
    InvalidPostState,
    MissingMediaAsset,
    NoPublishTargets,
    NothingToRetry,
    PostNotFound,
)
from app.services.publisher_adapter import PublisherAdapter, PublishResult, _sanitize, get_publisher
from app.services.status_reconciler import reconcile_post_status
from app.services.token_crypto import decrypt_token

logger = logging.getLogger(__name__)

PUBLISH_NOW_ALLOWED = (
    PostStatus.draft.value,
    PostStatus.scheduled.value,
    PostStatus.failed.value,
    PostStatus.partially_published.value,
)
QUEUEABLE_SUB_STATUSES = (
    PlatformPostStatus.draft.value,
    PlatformPostStatus.scheduled.value,
    PlatformPostStatus.failed.value,
)
# Parent statuses under which a due scheduled sub-post may still go out
PARENT_PUBLISHABLE = (
    PostStatus.scheduled.value,
    PostStatus.queued.value,
    PostStatus.publishing.value,
    PostStatus.partially_published.value,
)

NO_ACCOUNT_ERROR = "No connected account found"
NO_ASSET_ERROR = "No video asset found"


@dataclass
class SubPostOutcome:
    platform_post_id: int
    post_id: int
    platform: str
    success: bool
    error: str | None = None
    external_id: str | None = None
    external_url: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[SubPostOutcome] = field(default_factory=list)
    post_status: str | None = None

    def add(self, outcome: SubPostOutcome):
        self.results.append(outcome)
        if outcome.skipped:
            self.skipped += 1
            return
        self.processed += 1
        if outcome.success:
            self.succeeded += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
            "post_status": self.post_status,
        }


def _caption_for(pp: PlatformPost) -> str:
    return pp.caption_final or pp.caption_selected or ""


class PublishCoordinator:
    """Publishes platform sub-posts through their adapters.

    `publishers` maps platform -> adapter (defaults to the module registry),
    `decrypt` turns a stored credential into a usable one, `now` supplies the
    current UTC time.
    """

    def __init__(
        self,
        session: AsyncSession,
        publishers: Mapping[str, PublisherAdapter] | None = None,
        decrypt: Callable[[str], str] = decrypt_token,
        now: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.publishers = publishers
        self.decrypt = decrypt
        self.now = now
        self._accounts: dict[str, list[ConnectedAccount]] = {}

    # ── helpers ──────────────────────────────────────────────

    def _publisher_for(self, platform: str) -> PublisherAdapter | None:
        if self.publishers is not None:
            return self.publishers.get(platform)
        return get_publisher(platform)

    async def _accounts_for(self, user_id: str) -> list[ConnectedAccount]:
        if user_id not in self._accounts:
            self._accounts[user_id] = await load_accounts(self.session, user_id)
        return self._accounts[user_id]

    async def _load_post(self, post_id: int, user_id: str) -> Post:
        post = await self.session.scalar(
            select(Post)
            .where(Post.id == post_id, Post.user_id == user_id)
            .options(selectinload(Post.platform_posts), selectinload(Post.asset))
            .execution_options(populate_existing=True)
        )
        if post is None:
            raise PostNotFound(f"Post {post_id} not found")
        return post

    @staticmethod
    def _media_url(post: Post) -> str | None:
        return post.asset.public_url if post.asset is not None else None

    def _event(self, pp: PlatformPost, event_type: str, **payload):
        self.session.add(JobEvent(platform_post_id=pp.id, event_type=event_type, payload=payload or None))

    async def _mark_post_publishing(self, post_id: int):
        await self.session.execute(
            update(Post)
            .where(Post.id == post_id, Post.status != PostStatus.publishing.value)
            .values(status=PostStatus.publishing.value)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def _claim(self, pp: PlatformPost, expected: Iterable[str]) -> bool:
        """Atomically move a sub-post from an expected status to `publishing`."""
        now = self.now()
        result = await self.session.execute(
            update(PlatformPost)
            .where(PlatformPost.id == pp.id, PlatformPost.status.in_(tuple(expected)))
            .values(
                status=PlatformPostStatus.publishing.value,
                started_at=now,
                attempts=PlatformPost.attempts + 1,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.commit()
            return False

        attempt = await self.session.scalar(select(PlatformPost.attempts).where(PlatformPost.id == pp.id))
        key = f"{pp.post_id}:{pp.platform}:{attempt}"
        await self.session.execute(
            update(PlatformPost)
            .where(PlatformPost.id == pp.id)
            .values(idempotency_key=key)
            .execution_options(synchronize_session=False)
        )
        self._event(pp, "claimed", attempt=attempt, idempotency_key=key)
        await self.session.commit()
        return True

    async def _fail_unclaimed(self, pp: PlatformPost, error: str, expected: Iterable[str]) -> SubPostOutcome:
        """Fail a sub-post without contacting the vendor (no account / no media)."""
        result = await self.session.execute(
            update(PlatformPost)
            .where(PlatformPost.id == pp.id, PlatformPost.status.in_(tuple(expected)))
            .values(status=PlatformPostStatus.failed.value, last_error=error)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.commit()
            return self._skipped(pp, "status changed by another run")

        self._event(pp, "failed", error=error, attempted=False)
        await self.session.commit()
        logger.warning(f"[publish] pp={pp.id} {pp.platform}: {error}")
        return SubPostOutcome(pp.id, pp.post_id, pp.platform, success=False, error=error)

    @staticmethod
    def _skipped(pp: PlatformPost, reason: str) -> SubPostOutcome:
        logger.info(f"[publish] pp={pp.id} {pp.platform} skipped: {reason}")
        return SubPostOutcome(pp.id, pp.post_id, pp.platform, success=False, error=reason, skipped=True)

    async def _record(self, pp: PlatformPost, result: PublishResult) -> SubPostOutcome:
        now = self.now()
        if result.success:
            values = dict(
                status=PlatformPostStatus.published.value,
                published_at=now,
                external_post_id=result.external_id,
                external_url=result.permalink_url,
                last_error=None,
            )
            self._event(pp, "published", external_id=result.external_id, url=result.permalink_url)
        else:
            values = dict(status=PlatformPostStatus.failed.value, last_error=result.error)
            self._event(pp, "failed", error=result.error, retryable=result.retryable)

        await self.session.execute(
            update(PlatformPost)
            .where(PlatformPost.id == pp.id, PlatformPost.status == PlatformPostStatus.publishing.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if result.success:
            logger.info(f"[publish] pp={pp.id} {pp.platform} published external_id={result.external_id}")
        else:
            logger.warning(f"[publish] pp={pp.id} {pp.platform} failed: {result.error}")
        return SubPostOutcome(
            pp.id,
            pp.post_id,
            pp.platform,
            success=result.success,
            error=result.error,
            external_id=result.external_id,
            external_url=result.permalink_url,
        )

    # ── single sub-post ──────────────────────────────────────

    async def publish_one(
        self,
        pp: PlatformPost,
        media_url: str,
        accounts: Iterable[ConnectedAccount],
        *,
        expected: Iterable[str],
    ) -> SubPostOutcome:
        """Publish one sub-post that is currently in one of `expected` statuses."""
        expected = tuple(expected)
        account = resolve_account(accounts, pp.platform)
        if account is None:
            return await self._fail_unclaimed(pp, NO_ACCOUNT_ERROR, expected)

        if not await self._claim(pp, expected):
            return self._skipped(pp, "already claimed")

        publisher = self._publisher_for(pp.platform)
        if publisher is None:
            result = PublishResult(
                success=False, platform=pp.platform, error=f"{pp.platform} publishing not implemented"
            )
        else:
            try:
                credential = self.decrypt(account.token_encrypted)
                result = await publisher.publish(
                    credential,
                    account.external_account_id,
                    media_url,
                    _caption_for(pp),
                    ref=pp.id,
                    options=dict(account.meta or {}),
                )
            except Exception as exc:
                error = _sanitize(str(exc)) or exc.__class__.__name__
                logger.error(f"[publish] pp={pp.id} {pp.platform} adapter raised: {error}")
                result = PublishResult(success=False, platform=pp.platform, error=error)

        return await self._record(pp, result)

    # ── modes ────────────────────────────────────────────────

    async def publish_now(self, post_id: int, user_id: str) -> BatchSummary:
        post = await self._load_post(post_id, user_id)
        if post.status not in PUBLISH_NOW_ALLOWED:
            raise InvalidPostState(f"Cannot publish post with status: {post.status}")
        if not post.platform_posts:
            raise NoPublishTargets(f"Post {post_id} has no platform targets")
        media_url = self._media_url(post)
        if not media_url:
            raise MissingMediaAsset(NO_ASSET_ERROR)

        # Rows claimed by another run since the load stay out of this batch
        result = await self.session.execute(
            update(PlatformPost)
            .where(PlatformPost.post_id == post_id, PlatformPost.status.in_(QUEUEABLE_SUB_STATUSES))
            .values(status=PlatformPostStatus.queued.value)
            .returning(PlatformPost.id)
            .execution_options(synchronize_session=False)
        )
        queued_ids = set(result.scalars().all())
        await self._mark_post_publishing(post_id)
        queued = [pp for pp in post.platform_posts if pp.id in queued_ids]
        logger.info(f"[publish] post={post_id} publish-now, {len(queued)} platform(s) queued")

        accounts = await self._accounts_for(user_id)
        summary = BatchSummary()
        for pp in queued:
            summary.add(await self.publish_one(pp, media_url, accounts, expected=(PlatformPostStatus.queued.value,)))

        summary.post_status = (await reconcile_post_status(self.session, post_id)).value
        return summary

    async def retry(self, post_id: int, user_id: str, platforms: Iterable[str] | None = None) -> BatchSummary:
        """Re-attempt only the sub-posts that are currently failed."""
        post = await self._load_post(post_id, user_id)
        wanted = {p.lower() for p in platforms} if platforms else None
        targets = [
            pp for pp in post.platform_posts
            if pp.status == PlatformPostStatus.failed.value and (wanted is None or pp.platform in wanted)
        ]
        if not targets:
            raise NothingToRetry("No failed platforms to retry")
        media_url = self._media_url(post)
        if not media_url:
            raise MissingMediaAsset(NO_ASSET_ERROR)

        await self._mark_post_publishing(post_id)
        logger.info(f"[publish] post={post_id} retry {[pp.platform for pp in targets]}")

        accounts = await self._accounts_for(user_id)
        summary = BatchSummary()
        for pp in targets:
            summary.add(await self.publish_one(pp, media_url, accounts, expected=(PlatformPostStatus.failed.value,)))

        summary.post_status = (await reconcile_post_status(self.session, post_id)).value
        return summary

    async def publish_due(self, due: Iterable[PlatformPost]) -> BatchSummary:
        """Publish scheduled sub-posts whose time has come.

        `pp.post` and `pp.post.asset` must be loaded.
        """
        summary = BatchSummary()
        expected = (PlatformPostStatus.scheduled.value,)
        for pp in due:
            post = pp.post
            if post.status not in PARENT_PUBLISHABLE:
                summary.add(self._skipped(pp, f"parent post is {post.status}"))
                continue

            media_url = self._media_url(post)
            if not media_url:
                outcome = await self._fail_unclaimed(pp, NO_ASSET_ERROR, expected)
            else:
                await self._mark_post_publishing(post.id)
                accounts = await self._accounts_for(post.user_id)
                outcome = await self.publish_one(pp, media_url, accounts, expected=expected)

            summary.add(outcome)
            if not outcome.skipped:
                await reconcile_post_status(self.session, post.id)
        return summary

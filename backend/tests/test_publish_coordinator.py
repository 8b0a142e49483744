from __future__ import annotations

import pytest
from sqlalchemy import func, select, update

from app.models import JobEvent, PlatformPost
from app.services.account_service import select_primary
from app.services.errors import InvalidPostState, MissingMediaAsset, NothingToRetry, PostNotFound
from app.services.publish_coordinator import PublishCoordinator
from helpers import VIDEO_URL, by_platform


@pytest.fixture
def coordinator(session, fake_publishers):
    return PublishCoordinator(session, publishers=fake_publishers)


async def _event_types(session, pp_id: int) -> list[str]:
    result = await session.execute(
        select(JobEvent.event_type).where(JobEvent.platform_post_id == pp_id).order_by(JobEvent.id)
    )
    return list(result.scalars().all())


async def test_publish_now_all_platforms_succeed(session, coordinator, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post()

    summary = await coordinator.publish_now(post_id, "user-1")

    assert summary.processed == 2
    assert summary.succeeded == 2
    assert summary.failed == 0
    assert summary.post_status == "published"

    post = await load_post(post_id)
    assert post.status == "published"
    for platform, pp in by_platform(post).items():
        assert pp.status == "published"
        assert pp.external_post_id == f"{platform}-1"
        assert pp.external_url == f"https://{platform}.example/p/1"
        assert pp.published_at is not None
        assert pp.attempts == 1
        assert pp.last_error is None
        assert pp.idempotency_key == f"{post_id}:{platform}:1"
        assert await _event_types(session, pp.id) == ["claimed", "published"]

    call = fake_publishers["instagram"].calls[0]
    assert call["credential"] == "instagram-token"
    assert call["target_account_id"] == "instagram-acct"
    assert call["media_url"] == VIDEO_URL
    assert call["caption"] == "Launch day #reels"


async def test_partial_failure_then_retry_only_touches_failed(
    session, coordinator, fake_publishers, make_post, connect, load_post
):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post()
    fake_publishers["instagram"].fail_with("Container processing timeout")

    summary = await coordinator.publish_now(post_id, "user-1")

    assert summary.post_status == "partially_published"
    post = await load_post(post_id)
    subs = by_platform(post)
    assert subs["instagram"].status == "failed"
    assert subs["instagram"].last_error == "Container processing timeout"
    assert subs["facebook"].status == "published"
    fb_published_at = subs["facebook"].published_at
    fb_external_id = subs["facebook"].external_post_id

    fake_publishers["instagram"].succeed()
    retry_summary = await PublishCoordinator(session, publishers=fake_publishers).retry(post_id, "user-1")

    assert retry_summary.processed == 1
    assert retry_summary.post_status == "published"
    assert len(fake_publishers["facebook"].calls) == 1
    assert len(fake_publishers["instagram"].calls) == 2

    subs = by_platform(await load_post(post_id))
    assert subs["instagram"].status == "published"
    assert subs["instagram"].attempts == 2
    assert subs["instagram"].last_error is None
    assert subs["facebook"].published_at == fb_published_at
    assert subs["facebook"].external_post_id == fb_external_id
    assert subs["facebook"].attempts == 1


async def test_adapter_exception_is_isolated(session, coordinator, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post()
    fake_publishers["instagram"].exc = RuntimeError("socket closed")

    summary = await coordinator.publish_now(post_id, "user-1")

    assert summary.succeeded == 1
    assert summary.failed == 1
    subs = by_platform(await load_post(post_id))
    assert subs["instagram"].status == "failed"
    assert subs["instagram"].last_error == "socket closed"
    assert subs["facebook"].status == "published"
    assert (await load_post(post_id)).status == "partially_published"


async def test_missing_account_fails_without_adapter_call(
    session, coordinator, fake_publishers, make_post, connect, load_post
):
    await connect("facebook")
    post_id = await make_post()

    summary = await coordinator.publish_now(post_id, "user-1")

    assert fake_publishers["instagram"].calls == []
    assert summary.failed == 1
    subs = by_platform(await load_post(post_id))
    assert subs["instagram"].status == "failed"
    assert subs["instagram"].last_error == "No connected account found"
    assert subs["instagram"].attempts == 0
    assert subs["facebook"].status == "published"


async def test_accounts_of_other_users_are_not_used(coordinator, fake_publishers, make_post, connect, load_post):
    await connect("instagram", user_id="someone-else")
    post_id = await make_post(platforms=("instagram",))

    await coordinator.publish_now(post_id, "user-1")

    assert fake_publishers["instagram"].calls == []
    assert by_platform(await load_post(post_id))["instagram"].last_error == "No connected account found"


async def test_primary_account_is_preferred(coordinator, fake_publishers, make_post, connect):
    await connect("instagram", external_id="first")
    second = await connect("instagram", external_id="second")
    await select_primary(coordinator.session, "user-1", "instagram", second.id)
    post_id = await make_post(platforms=("instagram",))

    await coordinator.publish_now(post_id, "user-1")

    assert fake_publishers["instagram"].calls[0]["target_account_id"] == "second"


async def test_lost_claim_skips_without_publishing(session, coordinator, fake_publishers, make_post, connect, load_post):
    accounts = [await connect("instagram")]
    post_id = await make_post(platforms=("instagram",), status="publishing", sub_status="publishing")
    pp = by_platform(await load_post(post_id))["instagram"]

    outcome = await coordinator.publish_one(pp, VIDEO_URL, accounts, expected=("scheduled",))

    assert outcome.skipped is True
    assert fake_publishers["instagram"].calls == []
    refreshed = by_platform(await load_post(post_id))["instagram"]
    assert refreshed.status == "publishing"
    assert refreshed.attempts == 0


async def test_second_claim_on_same_sub_post_loses(session, fake_publishers, make_post, connect, load_post):
    accounts = [await connect("instagram")]
    post_id = await make_post(platforms=("instagram",), status="scheduled", sub_status="scheduled")
    pp = by_platform(await load_post(post_id))["instagram"]

    first = PublishCoordinator(session, publishers=fake_publishers)
    second = PublishCoordinator(session, publishers=fake_publishers)
    assert (await first.publish_one(pp, VIDEO_URL, accounts, expected=("scheduled",))).success is True
    assert (await second.publish_one(pp, VIDEO_URL, accounts, expected=("scheduled",))).skipped is True
    assert len(fake_publishers["instagram"].calls) == 1


async def test_platform_without_adapter_fails(session, make_post, connect, load_post, fake_publishers):
    await connect("tiktok")
    post_id = await make_post(platforms=("tiktok",))
    publishers = {"instagram": fake_publishers["instagram"]}

    summary = await PublishCoordinator(session, publishers=publishers).publish_now(post_id, "user-1")

    assert summary.failed == 1
    assert by_platform(await load_post(post_id))["tiktok"].last_error == "tiktok publishing not implemented"


async def test_publish_now_rejects_terminal_post(coordinator, make_post):
    post_id = await make_post(status="published", sub_status="published")
    with pytest.raises(InvalidPostState):
        await coordinator.publish_now(post_id, "user-1")


async def test_publish_now_requires_media(coordinator, make_post, connect):
    await connect("instagram")
    post_id = await make_post(public_url=None)
    with pytest.raises(MissingMediaAsset):
        await coordinator.publish_now(post_id, "user-1")


async def test_publish_now_checks_ownership(coordinator, make_post):
    post_id = await make_post(user_id="owner")
    with pytest.raises(PostNotFound):
        await coordinator.publish_now(post_id, "intruder")


async def test_publish_now_from_partially_published_skips_published(
    coordinator, fake_publishers, make_post, connect, load_post
):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post(status="partially_published", sub_status={"instagram": "failed", "facebook": "published"})

    summary = await coordinator.publish_now(post_id, "user-1")

    assert summary.processed == 1
    assert fake_publishers["facebook"].calls == []
    assert (await load_post(post_id)).status == "published"


async def test_retry_without_failures_raises(coordinator, make_post):
    post_id = await make_post(status="published", sub_status="published")
    with pytest.raises(NothingToRetry):
        await coordinator.retry(post_id, "user-1")


async def test_retry_filters_platforms(coordinator, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post(status="failed", sub_status="failed")

    summary = await coordinator.retry(post_id, "user-1", platforms=["facebook"])

    assert summary.processed == 1
    assert fake_publishers["instagram"].calls == []
    subs = by_platform(await load_post(post_id))
    assert subs["facebook"].status == "published"
    assert subs["instagram"].status == "failed"
    assert summary.post_status == "partially_published"


async def test_every_outcome_is_committed_with_events(session, coordinator, make_post, connect):
    await connect("instagram")
    post_id = await make_post()

    await coordinator.publish_now(post_id, "user-1")

    total = await session.scalar(select(func.count(JobEvent.id)))
    failed_pp = await session.scalar(
        select(PlatformPost)
        .where(PlatformPost.platform == "facebook")
        .execution_options(populate_existing=True)
    )
    assert failed_pp.status == "failed"
    # instagram: claimed + published, facebook: failed (no account)
    assert total == 3


class _ClaimedAfterLoad(PublishCoordinator):
    """Another run claims the instagram sub-post right after this one loads the post."""

    async def _load_post(self, post_id, user_id):
        post = await super()._load_post(post_id, user_id)
        await self.session.execute(
            update(PlatformPost)
            .where(PlatformPost.post_id == post_id, PlatformPost.platform == "instagram")
            .values(status="publishing")
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return post


async def test_publish_now_leaves_concurrently_claimed_sub_post(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post()

    summary = await _ClaimedAfterLoad(session, publishers=fake_publishers).publish_now(post_id, "user-1")

    assert fake_publishers["instagram"].calls == []
    assert summary.processed == 1
    subs = by_platform(await load_post(post_id))
    assert subs["instagram"].status == "publishing"
    assert subs["instagram"].attempts == 0
    assert subs["facebook"].status == "published"
    assert summary.post_status == "publishing"

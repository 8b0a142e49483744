from __future__ import annotations

from datetime import timedelta

import pytest

from app.services.publish_coordinator import PublishCoordinator
from app.services.scheduler_trigger import find_due_platform_posts, is_authorized_cron, run_due_posts
from app.settings import Settings
from helpers import NOW, by_platform


def _settings(**overrides) -> Settings:
    values = dict(
        environment="production",
        cron_secret="cron-s3cret",
        cron_header_name="x-vercel-cron",
        scheduler_secret="sched-s3cret",
    )
    values.update(overrides)
    return Settings.model_construct(**values)


@pytest.mark.parametrize(
    "headers, allowed",
    [
        ({"x-vercel-cron": "cron-s3cret"}, True),
        ({"x-vercel-cron": "wrong"}, False),
        ({"authorization": "Bearer sched-s3cret"}, True),
        ({"authorization": "bearer sched-s3cret"}, True),
        ({"authorization": "Bearer wrong"}, False),
        ({"authorization": "Basic sched-s3cret"}, False),
        ({}, False),
    ],
)
def test_cron_auth_in_production(headers, allowed):
    assert is_authorized_cron(headers, _settings()) is allowed


def test_unset_secrets_never_match():
    settings = _settings(cron_secret=None, scheduler_secret=None)
    assert is_authorized_cron({"x-vercel-cron": ""}, settings) is False
    assert is_authorized_cron({"authorization": "Bearer "}, settings) is False


def test_non_production_allows_unauthenticated_calls():
    assert is_authorized_cron({}, _settings(environment="local")) is True


async def test_due_sub_post_is_published(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    post_id = await make_post(
        platforms=("instagram",), status="scheduled", sub_status="scheduled", scheduled_for=NOW - timedelta(minutes=5)
    )

    result = await run_due_posts(session, now=NOW, publishers=fake_publishers)

    assert result["processed"] == 1
    assert result["succeeded"] == 1
    assert result["results"][0]["platform"] == "instagram"
    post = await load_post(post_id)
    assert post.status == "published"
    assert by_platform(post)["instagram"].status == "published"


async def test_future_sub_posts_are_left_alone(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    post_id = await make_post(
        platforms=("instagram",), status="scheduled", sub_status="scheduled", scheduled_for=NOW + timedelta(hours=1)
    )

    result = await run_due_posts(session, now=NOW, publishers=fake_publishers)

    assert result == {
        "message": "No scheduled posts to process",
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
        "skipped": 0,
        "results": [],
    }
    assert (await load_post(post_id)).status == "scheduled"


async def test_canceled_parent_is_skipped(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    post_id = await make_post(
        platforms=("instagram",), status="canceled", sub_status="scheduled", scheduled_for=NOW - timedelta(minutes=1)
    )

    result = await run_due_posts(session, now=NOW, publishers=fake_publishers)

    assert result["message"] == "No scheduled posts to process"
    assert fake_publishers["instagram"].calls == []
    post = await load_post(post_id)
    assert post.status == "canceled"
    assert by_platform(post)["instagram"].status == "scheduled"
    assert by_platform(post)["instagram"].attempts == 0


async def test_stale_rows_do_not_starve_the_batch(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    for minutes in range(60, 50, -1):
        await make_post(
            platforms=("instagram",),
            status="canceled",
            sub_status="scheduled",
            scheduled_for=NOW - timedelta(minutes=minutes),
        )
    valid_id = await make_post(
        platforms=("instagram",), status="scheduled", sub_status="scheduled", scheduled_for=NOW - timedelta(minutes=1)
    )

    result = await run_due_posts(session, now=NOW, batch_size=3, publishers=fake_publishers)

    assert result["processed"] == 1
    assert result["skipped"] == 0
    assert (await load_post(valid_id)).status == "published"


async def test_parent_canceled_after_selection_is_skipped(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    post_id = await make_post(
        platforms=("instagram",), status="scheduled", sub_status="scheduled", scheduled_for=NOW - timedelta(minutes=1)
    )
    due = await find_due_platform_posts(session, NOW, 10)
    due[0].post.status = "canceled"

    summary = await PublishCoordinator(session, publishers=fake_publishers, now=lambda: NOW).publish_due(due)

    assert summary.skipped == 1
    assert summary.results[0].error == "parent post is canceled"
    assert fake_publishers["instagram"].calls == []
    assert by_platform(await load_post(post_id))["instagram"].status == "scheduled"


async def test_missing_asset_fails_sub_post(session, fake_publishers, make_post, connect, load_post):
    await connect("facebook")
    post_id = await make_post(
        platforms=("facebook",),
        status="scheduled",
        sub_status="scheduled",
        public_url=None,
        scheduled_for=NOW - timedelta(minutes=1),
    )

    result = await run_due_posts(session, now=NOW, publishers=fake_publishers)

    assert result["failed"] == 1
    assert fake_publishers["facebook"].calls == []
    post = await load_post(post_id)
    assert by_platform(post)["facebook"].last_error == "No video asset found"
    assert post.status == "failed"


async def test_batch_is_bounded_and_oldest_first(session, fake_publishers, make_post, connect, load_post):
    await connect("tiktok")
    ids = []
    for minutes in (30, 20, 10):
        ids.append(await make_post(
            platforms=("tiktok",),
            status="scheduled",
            sub_status="scheduled",
            scheduled_for=NOW - timedelta(minutes=minutes),
        ))

    result = await run_due_posts(session, now=NOW, batch_size=2, publishers=fake_publishers)

    assert result["processed"] == 2
    assert [r["post_id"] for r in result["results"]] == ids[:2]
    assert (await load_post(ids[2])).status == "scheduled"

    second = await run_due_posts(session, now=NOW, batch_size=2, publishers=fake_publishers)
    assert second["processed"] == 1


async def test_failures_are_reported_without_aborting_batch(session, fake_publishers, make_post, connect, load_post):
    await connect("instagram")
    await connect("facebook")
    post_id = await make_post(status="scheduled", sub_status="scheduled", scheduled_for=NOW - timedelta(minutes=1))
    fake_publishers["instagram"].fail_with("Invalid OAuth access token")

    result = await run_due_posts(session, now=NOW, publishers=fake_publishers)

    assert result["processed"] == 2
    assert result["failed"] == 1
    assert result["succeeded"] == 1
    assert (await load_post(post_id)).status == "partially_published"

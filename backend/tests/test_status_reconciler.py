from __future__ import annotations

import itertools

import pytest

from app.models import PostStatus
from app.services.errors import NoPublishTargets
from app.services.status_reconciler import heal_post_status, reconcile, reconcile_post_status


@pytest.mark.parametrize(
    "statuses, expected",
    [
        (["published", "published"], PostStatus.published),
        (["published", "failed"], PostStatus.partially_published),
        (["failed", "failed"], PostStatus.failed),
        (["canceled", "canceled"], PostStatus.canceled),
        (["published", "publishing"], PostStatus.publishing),
        (["failed", "queued"], PostStatus.publishing),
        (["canceled", "scheduled"], PostStatus.publishing),
        (["published", "canceled"], PostStatus.partially_published),
        (["failed", "canceled"], PostStatus.failed),
        (["draft"], PostStatus.failed),
        (["draft", "published"], PostStatus.partially_published),
        (["published"], PostStatus.published),
    ],
)
def test_reconcile_precedence(statuses, expected):
    assert reconcile(statuses) == expected


def test_reconcile_is_order_independent():
    statuses = ["published", "failed", "canceled", "draft"]
    results = {reconcile(list(p)) for p in itertools.permutations(statuses)}
    assert results == {PostStatus.partially_published}


def test_pending_wins_over_everything():
    for other in ("published", "failed", "canceled", "draft"):
        for pending in ("scheduled", "queued", "publishing"):
            assert reconcile([other, pending]) == PostStatus.publishing


def test_reconcile_empty_raises():
    with pytest.raises(NoPublishTargets):
        reconcile([])


async def test_reconcile_post_status_persists(session, make_post, load_post):
    post_id = await make_post(status="publishing", sub_status={"instagram": "published", "facebook": "failed"})

    result = await reconcile_post_status(session, post_id)

    assert result == PostStatus.partially_published
    post = await load_post(post_id)
    assert post.status == "partially_published"


async def test_heal_rewrites_stuck_publishing_post(session, make_post, load_post):
    post_id = await make_post(status="publishing", sub_status="published")
    post = await load_post(post_id)

    healed = await heal_post_status(session, post)

    assert healed is True
    assert (await load_post(post_id)).status == "published"


async def test_heal_rewrites_canceled_post_with_published_sibling(session, make_post, load_post):
    post_id = await make_post(status="canceled", sub_status={"instagram": "published", "facebook": "canceled"})

    assert await heal_post_status(session, await load_post(post_id)) is True
    assert (await load_post(post_id)).status == "partially_published"


async def test_heal_is_noop_when_status_already_derived(session, make_post, load_post):
    post_id = await make_post(status="canceled", sub_status="canceled")
    assert await heal_post_status(session, await load_post(post_id)) is False


async def test_heal_leaves_in_flight_post_alone(session, make_post, load_post):
    post_id = await make_post(status="publishing", sub_status={"instagram": "published", "facebook": "publishing"})
    post = await load_post(post_id)

    assert await heal_post_status(session, post) is False
    assert (await load_post(post_id)).status == "publishing"


async def test_heal_ignores_settled_and_empty_posts(session, make_post, load_post):
    draft_id = await make_post(status="draft", sub_status="failed")
    empty_id = await make_post(status="queued", platforms=())

    assert await heal_post_status(session, await load_post(draft_id)) is False
    assert await heal_post_status(session, await load_post(empty_id)) is False
    assert (await load_post(empty_id)).status == "queued"

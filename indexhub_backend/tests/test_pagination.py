from __future__ import annotations

import base64

import pytest

from indexhub_backend.api.pagination import (
    PageRequest,
    decode_cursor,
    encode_cursor,
    paginate,
)
from indexhub_backend.errors import InvalidArgument, InvalidCursor
from indexhub_backend.models.entities import JobRun


def _seed_runs(db_manager, count):
    with db_manager.get_session() as session:
        for index in range(count):
            # terminal runs so the in-flight index does not interfere
            session.add(
                JobRun(resource_id=index + 1, job_kind="scheduler_git", state="succeeded")
            )
        session.commit()


def _page(db_manager, **kwargs):
    with db_manager.get_session() as session:
        return paginate(
            session.query(JobRun), JobRun.id, "JobRun", PageRequest(**kwargs)
        )


def test_cursor_is_opaque_and_scoped_to_collection():
    cursor = encode_cursor("JobRun", 42)

    assert "42" not in cursor
    assert decode_cursor("JobRun", cursor) == 42
    with pytest.raises(InvalidCursor):
        decode_cursor("TrackedResource", cursor)


@pytest.mark.parametrize(
    "cursor",
    [
        "not-base64!!",
        base64.urlsafe_b64encode(b"JobRun:abc").decode(),
        base64.urlsafe_b64encode(b"JobRun:0").decode(),
        base64.urlsafe_b64encode(b"JobRun:" + b"9" * 30).decode(),
        base64.urlsafe_b64encode(b"JobRun:9223372036854775808").decode(),
        base64.urlsafe_b64encode(b"JobRun").decode(),
    ],
)
def test_malformed_cursor_is_rejected(cursor):
    with pytest.raises(InvalidCursor):
        decode_cursor("JobRun", cursor)


def test_oversized_cursor_fails_before_querying(db_manager):
    _seed_runs(db_manager, 3)
    cursor = base64.urlsafe_b64encode(b"JobRun:" + b"9" * 30).decode()

    with pytest.raises(InvalidCursor):
        _page(db_manager, after=cursor, first=5)


def test_forward_walk_yields_every_record_once(db_manager):
    _seed_runs(db_manager, 23)

    seen = []
    after = None
    pages = 0
    while True:
        connection = _page(db_manager, first=5, after=after)
        seen.extend(node.id for node in connection.nodes)
        pages += 1
        if not connection.page_info.has_next_page:
            break
        after = connection.page_info.end_cursor

    assert pages == 5
    assert seen == sorted(set(seen))
    assert len(seen) == 23


def test_exact_multiple_terminates_without_empty_trailing_page(db_manager):
    _seed_runs(db_manager, 10)

    first = _page(db_manager, first=5)
    second = _page(db_manager, first=5, after=first.page_info.end_cursor)

    assert first.page_info.has_next_page is True
    assert first.page_info.has_previous_page is False
    assert second.page_info.has_next_page is False
    assert second.page_info.has_previous_page is True


def test_backward_walk_with_last_and_before(db_manager):
    _seed_runs(db_manager, 7)

    tail = _page(db_manager, last=3)
    assert [node.id for node in tail.nodes] == [5, 6, 7]
    assert tail.page_info.has_previous_page is True
    assert tail.page_info.has_next_page is False

    middle = _page(db_manager, last=3, before=tail.page_info.start_cursor)
    assert [node.id for node in middle.nodes] == [2, 3, 4]
    assert middle.page_info.has_next_page is True

    head = _page(db_manager, last=3, before=middle.page_info.start_cursor)
    assert [node.id for node in head.nodes] == [1]
    assert head.page_info.has_previous_page is False


def test_after_and_before_bound_a_window(db_manager):
    _seed_runs(db_manager, 10)

    connection = _page(
        db_manager,
        after=encode_cursor("JobRun", 2),
        before=encode_cursor("JobRun", 6),
        first=10,
    )

    assert [node.id for node in connection.nodes] == [3, 4, 5]
    assert connection.page_info.has_next_page is False


def test_empty_collection(db_manager):
    connection = _page(db_manager, first=5)

    assert connection.edges == []
    assert connection.page_info.start_cursor is None
    assert connection.page_info.end_cursor is None
    assert connection.page_info.has_next_page is False


def test_default_page_size_applies(db_manager):
    _seed_runs(db_manager, 30)

    assert len(_page(db_manager).edges) == 20


def test_first_and_last_together_is_invalid(db_manager):
    with pytest.raises(InvalidArgument):
        _page(db_manager, first=1, last=1)


def test_negative_and_oversized_pages_are_invalid():
    with pytest.raises(InvalidArgument):
        PageRequest(first=-1).validate()
    with pytest.raises(InvalidArgument):
        PageRequest(last=101).validate(max_page_size=100)

"""Tests for DSARService against a real (in-memory SQLite) session."""

import csv
import io
import json
import re
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from consenthub.core.exceptions import ConflictError, NotFoundError, ValidationError
from consenthub.dsar.service import generate_request_id
from consenthub.dsar.sla import as_utc
from consenthub.events.bus import DSAR_STATUS_CHANGED, DSAR_SUBMITTED
from consenthub.events.delivery import pending_events
from consenthub.models.dsar_request import DSARRequest, DSARStatusChange
from tests.conftest import START, dsar_payload

REQUEST_ID_RE = re.compile(r"^DSAR-\d+-[A-Z0-9]{6}$")


async def _count(db_session, model=DSARRequest) -> int:
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


class TestGenerateRequestId:
    def test_format(self):
        request_id = generate_request_id(START)
        assert REQUEST_ID_RE.match(request_id)
        assert request_id.startswith(f"DSAR-{int(START.timestamp() * 1000)}-")

    def test_ids_differ_within_the_same_millisecond(self):
        ids = {generate_request_id(START) for _ in range(50)}
        assert len(ids) == 50


class TestCreateRequest:
    async def test_new_request_defaults(self, service):
        record = await service.create_request(dsar_payload(), requester_id="cust-alice")

        assert REQUEST_ID_RE.match(record.request_id)
        assert record.status == "pending"
        assert record.priority == "medium"
        assert record.submitted_at == START
        assert record.due_date == START + timedelta(days=30)
        assert record.requester_id == "cust-alice"
        assert record.jurisdiction == "Sri Lanka"
        assert record.applicable_laws == ["PDPA_SL"]
        assert record.verification_status == "pending"
        assert record.version == 1
        assert record.acknowledged_at is None and record.completed_at is None

    async def test_jurisdiction_maps_to_law(self, service):
        record = await service.create_request(dsar_payload(jurisdiction="European Union"))
        assert record.applicable_laws == ["GDPR"]

    async def test_unknown_jurisdiction_falls_back_to_default_law(self, service):
        record = await service.create_request(dsar_payload(jurisdiction="Atlantis"))
        assert record.jurisdiction == "Atlantis"
        assert record.applicable_laws == ["PDPA_SL"]

    async def test_requester_id_falls_back_to_email(self, service):
        record = await service.create_request(dsar_payload())
        assert record.requester_id == "alice@example.com"

    async def test_invalid_email_persists_nothing(self, service, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_request(dsar_payload(requesterEmail="not-an-email"))

        assert exc_info.value.fields == ["requesterEmail"]
        assert await _count(db_session) == 0

    async def test_unknown_request_type(self, service, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_request(dsar_payload(requestType="data_hoarding"))
        assert exc_info.value.fields == ["requestType"]
        assert await _count(db_session) == 0

    async def test_subject_too_long(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_request(dsar_payload(subject="x" * 201))
        assert exc_info.value.fields == ["subject"]

    async def test_missing_required_fields_are_all_reported(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_request({"requesterName": "Alice"})
        assert set(exc_info.value.fields) == {
            "requesterEmail",
            "requestType",
            "subject",
            "description",
        }

    async def test_requester_fields_round_trip_unchanged(self, service, db_session):
        submitted = dsar_payload(
            requesterName="  Alice Perera ",
            requesterEmail="Alice.Perera@Example.COM",
            requesterPhone="+94 77 123 4567",
            requestType="data_access",
            description="  Every record you hold about me.\nThanks ",
        )
        created = await service.create_request(submitted)
        await db_session.commit()
        db_session.expunge_all()

        fetched = await service.get_request(created.request_id)
        assert fetched.requester_name == "  Alice Perera "
        assert fetched.requester_email == "Alice.Perera@Example.COM"
        assert fetched.requester_phone == "+94 77 123 4567"
        assert fetched.request_type == "data_access"
        assert fetched.description == "  Every record you hold about me.\nThanks "

    @pytest.mark.parametrize("email", ["bob@corp.test", "ops+dsar@mail.example.lk", "a@host.local"])
    async def test_any_well_formed_email_is_accepted(self, service, email):
        record = await service.create_request(dsar_payload(requesterEmail=email))
        assert record.requester_email == email

    @pytest.mark.parametrize("email", ["a@b", "two@@example.com", "sp ace@example.com", "@example.com"])
    async def test_malformed_email(self, service, email):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_request(dsar_payload(requesterEmail=email))
        assert exc_info.value.fields == ["requesterEmail"]

    async def test_blank_name(self, service, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_request(dsar_payload(requesterName="   "))
        assert exc_info.value.fields == ["requesterName"]
        assert await _count(db_session) == 0

    async def test_publishes_submitted_event(self, service, event_bus, db_session):
        record = await service.create_request(dsar_payload(), requester_id="cust-alice")
        await db_session.commit()

        [event] = event_bus.recent()
        assert event.type == DSAR_SUBMITTED
        assert event.request_id == record.request_id
        assert event.requester_id == "cust-alice"
        assert event.payload["requestType"] == "data_erasure"


class TestTransitionStatus:
    async def test_acknowledge_is_stamped_once(self, service, clock):
        record = await service.create_request(dsar_payload())

        t1 = clock.advance(hours=3)
        await service.transition_status(record.request_id, "in_progress", author="Carol")
        clock.advance(hours=1)
        await service.transition_status(record.request_id, "in_progress", author="Carol")

        assert record.acknowledged_at == t1
        assert len(record.status_changes) == 1

    async def test_complete_stamps_completed_at(self, service, clock):
        record = await service.create_request(dsar_payload())
        await service.transition_status(record.request_id, "in_progress")
        done = clock.advance(days=4)
        await service.transition_status(record.request_id, "completed", author="Carol")

        assert record.status == "completed"
        assert record.completed_at == done
        out_changes = [(c.from_status, c.to_status) for c in record.status_changes]
        assert out_changes == [("pending", "in_progress"), ("in_progress", "completed")]

    async def test_due_date_survives_every_transition(self, service, clock, db_session):
        record = await service.create_request(dsar_payload())
        for new_status in ("in_progress", "completed", "pending", "in_progress"):
            clock.advance(days=3)
            await service.transition_status(record.request_id, new_status, author="Carol")
        clock.advance(days=1)
        await service.update_request(
            record.request_id,
            {"status": "rejected", "rejectionReason": "no_data_found", "priority": "high"},
            author="Carol",
        )
        await db_session.commit()
        db_session.expunge_all()

        fetched = await service.get_request(record.request_id)
        assert len(fetched.status_changes) == 5
        assert as_utc(fetched.due_date) == START + timedelta(days=30)

    async def test_reject_without_reason_leaves_record_unchanged(self, service, db_session):
        record = await service.create_request(dsar_payload())

        with pytest.raises(ValidationError):
            await service.transition_status(record.request_id, "rejected")

        assert record.status == "pending"
        assert record.version == 1
        assert await _count(db_session, DSARStatusChange) == 0

    async def test_unknown_request(self, service):
        with pytest.raises(NotFoundError):
            await service.transition_status("DSAR-0-NOPE00", "completed")

    async def test_only_real_changes_publish_events(self, service, event_bus, db_session):
        record = await service.create_request(dsar_payload())
        await service.transition_status(record.request_id, "in_progress", author="Carol")
        await service.transition_status(record.request_id, "in_progress", author="Carol")
        await db_session.commit()

        changes = [e for e in event_bus.recent() if e.type == DSAR_STATUS_CHANGED]
        assert len(changes) == 1
        assert changes[0].payload == {
            "oldStatus": "pending",
            "newStatus": "in_progress",
            "changedBy": "Carol",
        }

    async def test_expected_version_mismatch_conflicts(self, service):
        record = await service.create_request(dsar_payload())
        await service.transition_status(record.request_id, "in_progress")
        assert record.version == 2

        with pytest.raises(ConflictError) as exc_info:
            await service.transition_status(record.request_id, "completed", expected_version=1)

        assert exc_info.value.details["currentVersion"] == 2
        assert record.status == "in_progress"

    async def test_concurrent_write_conflicts(self, service, db_session):
        record = await service.create_request(dsar_payload())
        await db_session.commit()

        # Another writer bumps the version behind this session's back
        await db_session.execute(
            update(DSARRequest.__table__)
            .where(DSARRequest.__table__.c.request_id == record.request_id)
            .values(version=7)
        )

        with pytest.raises(ConflictError):
            await service.transition_status(record.request_id, "in_progress")


class TestUpdateRequest:
    async def test_status_and_fields_together(self, service):
        record = await service.create_request(dsar_payload())
        await service.update_request(
            record.request_id,
            {
                "status": "in_progress",
                "priority": "urgent",
                "note": "Started search",
                "riskLevel": "high",
                "tags": ["vip"],
                "relatedTickets": ["T-1"],
                "responseData": {"format": "csv", "recordCount": 12},
            },
            author="Carol",
        )

        assert record.status == "in_progress"
        assert record.acknowledged_at is not None
        assert record.priority == "urgent"
        assert record.risk_level == "high"
        assert record.tags == ["vip"]
        assert record.related_tickets == ["T-1"]
        assert record.response_data == {"format": "csv", "recordCount": 12}
        assert [n.note for n in record.processing_notes] == ["Started search"]
        assert record.updated_by == "Carol"

    async def test_note_only_keeps_status(self, service, event_bus, db_session):
        record = await service.create_request(dsar_payload())
        await service.update_request(record.request_id, {"note": "Called customer"}, author="Carol")
        await db_session.commit()

        assert record.status == "pending"
        assert record.status_changes == []
        assert [e.type for e in event_bus.recent()] == [DSAR_SUBMITTED]

    async def test_reject_via_update(self, service):
        record = await service.create_request(dsar_payload())
        await service.update_request(
            record.request_id,
            {"status": "rejected", "rejectionReason": "no_data_found", "rejectionDetails": "None held"},
        )
        assert record.rejection_reason == "no_data_found"
        assert record.rejection_details == "None held"

    async def test_rejection_fields_without_rejected_status(self, service):
        record = await service.create_request(dsar_payload())
        with pytest.raises(ValidationError) as exc_info:
            await service.update_request(record.request_id, {"rejectionReason": "other"})
        assert exc_info.value.fields == ["rejectionReason"]
        assert record.rejection_reason is None

    async def test_invalid_priority(self, service):
        record = await service.create_request(dsar_payload())
        with pytest.raises(ValidationError) as exc_info:
            await service.update_request(record.request_id, {"priority": "whenever"})
        assert exc_info.value.fields == ["priority"]

    async def test_expected_version(self, service):
        record = await service.create_request(dsar_payload())
        with pytest.raises(ConflictError):
            await service.update_request(record.request_id, {"priority": "high", "expectedVersion": 3})
        assert record.priority == "medium"

        await service.update_request(record.request_id, {"priority": "high", "expectedVersion": 1})
        assert record.priority == "high"
        assert record.version == 2

    async def test_scope_hides_other_requesters(self, service):
        record = await service.create_request(dsar_payload(), requester_id="cust-alice")
        with pytest.raises(NotFoundError):
            await service.update_request(
                record.request_id, {"status": "cancelled"}, requester_scope="cust-bob"
            )


class TestNotesAndCommunications:
    async def test_add_note(self, service, clock):
        record = await service.create_request(dsar_payload())
        when = clock.advance(minutes=5)
        await service.add_note(record.request_id, "Checked CRM", author="Carol")

        [note] = record.processing_notes
        assert (note.note, note.author, note.timestamp) == ("Checked CRM", "Carol", when)
        assert record.updated_at == when

    async def test_notes_accumulate_in_call_order(self, service, clock, db_session):
        record = await service.create_request(dsar_payload())
        expected = []

        at = clock.advance(hours=1)
        await service.add_note(record.request_id, "Called the customer", author="Carol")
        expected.append(("Called the customer", "Carol", at))

        at = clock.advance(hours=2)
        await service.transition_status(
            record.request_id, "in_progress", note=" Identity confirmed by phone ", author="Dave"
        )
        expected.append((" Identity confirmed by phone ", "Dave", at))

        at = clock.advance(days=1)
        await service.add_note(record.request_id, "Pulled CRM export", author="Carol")
        expected.append(("Pulled CRM export", "Carol", at))

        at = clock.advance(minutes=5)
        await service.add_note(record.request_id, "Waiting on billing team", author="Dave")
        expected.append(("Waiting on billing team", "Dave", at))

        await db_session.commit()
        db_session.expunge_all()
        fetched = await service.get_request(record.request_id)

        assert len(fetched.processing_notes) == 4
        assert [
            (n.note, n.author, as_utc(n.timestamp)) for n in fetched.processing_notes
        ] == expected

    async def test_blank_note(self, service):
        record = await service.create_request(dsar_payload())
        with pytest.raises(ValidationError):
            await service.add_note(record.request_id, "  ")

    async def test_add_communication(self, service):
        record = await service.create_request(dsar_payload())
        await service.add_communication(
            record.request_id,
            type="email",
            direction="outbound",
            content="We received your request",
            author="Carol",
        )
        [comm] = record.communications
        assert (comm.type, comm.direction) == ("email", "outbound")

    async def test_bad_direction(self, service):
        record = await service.create_request(dsar_payload())
        with pytest.raises(ValidationError) as exc_info:
            await service.add_communication(
                record.request_id, type="email", direction="sideways", content="hi"
            )
        assert exc_info.value.fields == ["direction"]


class TestAssignAndVerify:
    async def test_assign_overwrites(self, service, clock):
        record = await service.create_request(dsar_payload())
        await service.assign(record.request_id, "csr-1", name="One")
        when = clock.advance(hours=1)
        await service.assign(record.request_id, "csr-2", name="Two", email="two@example.com")

        assert record.assigned_user_id == "csr-2"
        assert record.assigned_name == "Two"
        assert record.assigned_email == "two@example.com"
        assert record.assigned_at == when

    async def test_verify_then_fail_clears_stamp(self, service):
        record = await service.create_request(dsar_payload())
        await service.update_verification(
            record.request_id, "verified", method="identity_document", verified_by="Carol"
        )
        assert record.verification_status == "verified"
        assert record.verification_method == "identity_document"
        assert record.verified_at == START
        assert record.verified_by == "Carol"

        await service.update_verification(record.request_id, "failed", verified_by="Carol")
        assert record.verified_at is None
        assert record.verified_by is None

    async def test_unknown_verification_status(self, service):
        record = await service.create_request(dsar_payload())
        with pytest.raises(ValidationError) as exc_info:
            await service.update_verification(record.request_id, "maybe")
        assert exc_info.value.fields == ["verificationStatus"]


class TestListRequests:
    async def _seed(self, service, clock):
        """3 pending + 2 completed, submitted one hour apart."""
        records = []
        for i in range(5):
            clock.advance(hours=1)
            records.append(
                await service.create_request(
                    dsar_payload(requesterName=f"User {i}", priority=["low", "urgent", "medium", "high", "low"][i]),
                    requester_id="cust-alice" if i < 3 else "cust-bob",
                )
            )
        for record in records[3:]:
            await service.transition_status(record.request_id, "completed")
        return records

    async def test_filter_by_status_with_unfiltered_stats(self, service, clock):
        await self._seed(service, clock)
        page = await service.list_requests({"status": "pending"})

        assert page.total == 3
        assert len(page.requests) == 3
        assert all(r.status == "pending" for r in page.requests)
        assert page.stats == {
            "pending": 3,
            "in_progress": 0,
            "completed": 2,
            "rejected": 0,
            "cancelled": 0,
        }

    async def test_default_sort_is_newest_first(self, service, clock):
        records = await self._seed(service, clock)
        page = await service.list_requests()
        assert [r.request_id for r in page.requests] == [r.request_id for r in reversed(records)]

    async def test_sort_by_priority(self, service, clock):
        await self._seed(service, clock)
        page = await service.list_requests({"sortBy": "priority", "sortOrder": "asc"})
        assert [r.priority for r in page.requests] == ["low", "low", "medium", "high", "urgent"]

    async def test_pagination(self, service, clock):
        await self._seed(service, clock)
        page = await service.list_requests({"page": 2, "limit": 2, "sortOrder": "asc"})

        assert page.total == 5
        assert page.total_pages == 3
        assert [r.requester_name for r in page.requests] == ["User 2", "User 3"]

    async def test_page_past_the_end_is_empty(self, service, clock):
        await self._seed(service, clock)
        page = await service.list_requests({"page": 9, "limit": 2})
        assert page.requests == []
        assert page.total == 5

    @pytest.mark.parametrize(
        ("query", "field"),
        [
            ({"page": 0}, "page"),
            ({"limit": 0}, "limit"),
            ({"limit": 101}, "limit"),
            ({"sortBy": "password"}, "sortBy"),
            ({"sortOrder": "sideways"}, "sortOrder"),
        ],
    )
    async def test_invalid_paging(self, service, query, field):
        with pytest.raises(ValidationError) as exc_info:
            await service.list_requests(query)
        assert exc_info.value.fields == [field]

    async def test_requester_scope(self, service, clock):
        await self._seed(service, clock)
        page = await service.list_requests(requester_scope="cust-bob")

        assert page.total == 2
        assert {r.requester_id for r in page.requests} == {"cust-bob"}
        assert page.stats["completed"] == 2
        assert page.stats["pending"] == 0

    async def test_other_filters(self, service, clock):
        records = await self._seed(service, clock)
        await service.assign(records[0].request_id, "csr-1")

        assert (await service.list_requests({"assignedTo": "csr-1"})).total == 1
        assert (await service.list_requests({"priority": "low"})).total == 2
        assert (await service.list_requests({"requesterEmail": "ALICE@example.com"})).total == 5
        assert (await service.list_requests({"requestType": "data_access"})).total == 0
        since = records[3].submitted_at
        assert (await service.list_requests({"submittedFrom": since.isoformat()})).total == 2

    async def test_overdue_filter(self, service, clock):
        records = await self._seed(service, clock)
        await service.transition_status(records[0].request_id, "cancelled")
        clock.advance(days=31)

        overdue = await service.list_requests({"overdue": True})
        # Cancelled still counts; completed never does
        assert overdue.total == 3
        assert (await service.list_requests({"overdue": False})).total == 2


class TestOverdueAndStats:
    async def test_overdue_report_only_open_requests(self, service, clock):
        a = await service.create_request(dsar_payload())
        clock.advance(days=1)
        b = await service.create_request(dsar_payload())
        c = await service.create_request(dsar_payload())
        await service.transition_status(b.request_id, "in_progress")
        await service.transition_status(c.request_id, "cancelled")

        assert await service.list_overdue() == []
        clock.advance(days=30, seconds=1)

        overdue = await service.list_overdue()
        assert [r.request_id for r in overdue] == [a.request_id, b.request_id]

    async def test_stats(self, service, clock):
        on_time = await service.create_request(dsar_payload(requestType="data_access"))
        late = await service.create_request(dsar_payload(priority="high"))
        await service.create_request(dsar_payload())

        clock.advance(days=10)
        await service.transition_status(on_time.request_id, "completed")
        clock.advance(days=30)
        await service.transition_status(late.request_id, "completed")

        stats = await service.get_stats()
        assert stats.total == 3
        assert stats.by_status["completed"] == 2
        assert stats.by_status["pending"] == 1
        assert stats.by_type == {"data_access": 1, "data_erasure": 2}
        assert stats.by_priority == {"high": 1, "medium": 2}
        assert stats.overdue == 1
        assert stats.average_processing_days == 25.0
        assert stats.compliance_rate == 50.0

    async def test_stats_with_nothing_completed(self, service):
        await service.create_request(dsar_payload())
        stats = await service.get_stats()
        assert stats.average_processing_days is None
        assert stats.compliance_rate is None

    async def test_stats_date_window(self, service, clock):
        await service.create_request(dsar_payload(requestType="data_access"))
        clock.advance(days=10)
        inside = await service.create_request(dsar_payload(priority="urgent"))
        clock.advance(days=2)
        await service.transition_status(inside.request_id, "completed")
        clock.advance(days=10)
        await service.create_request(dsar_payload())

        stats = await service.get_stats(
            from_date=START + timedelta(days=5), to_date=START + timedelta(days=15)
        )
        assert stats.total == 1
        assert stats.by_status["completed"] == 1
        assert stats.by_priority == {"urgent": 1}
        assert stats.compliance_rate == 100.0

        assert (await service.get_stats(from_date=START + timedelta(days=5))).total == 2
        assert (await service.get_stats(to_date=START)).total == 1

    async def test_stats_window_must_be_ordered(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.get_stats(from_date=START, to_date=START - timedelta(days=1))
        assert exc_info.value.fields == ["fromDate", "toDate"]


class TestHistory:
    async def test_timeline_order(self, service, clock):
        record = await service.create_request(dsar_payload(), created_by="cust-alice")
        clock.advance(minutes=1)
        await service.add_communication(
            record.request_id, type="email", direction="outbound", content="Ack", author="Carol"
        )
        clock.advance(minutes=1)
        await service.transition_status(
            record.request_id, "in_progress", note="Working on it", author="Carol"
        )

        history = await service.get_history(record.request_id)
        assert [h.kind for h in history] == ["created", "communication", "status_change", "note"]
        assert history[0].author == "cust-alice"
        assert history[2].details == {"fromStatus": "pending", "toStatus": "in_progress"}

    async def test_scoped_history(self, service):
        record = await service.create_request(dsar_payload(), requester_id="cust-alice")
        with pytest.raises(NotFoundError):
            await service.get_history(record.request_id, requester_scope="cust-bob")


class TestExport:
    async def test_csv(self, service, clock):
        first = await service.create_request(dsar_payload(requesterName="Ann, Jr."))
        clock.advance(hours=1)
        await service.create_request(dsar_payload(requesterName="Ben"))

        result = await service.export({"sortOrder": "asc"}, fmt="csv")
        rows = list(csv.DictReader(io.StringIO(result.content.decode("utf-8"))))

        assert result.media_type == "text/csv"
        assert result.filename.endswith(".csv")
        assert result.count == 2
        assert rows[0]["requestId"] == first.request_id
        assert rows[0]["requesterName"] == "Ann, Jr."
        assert rows[0]["isOverdue"] == "false"

    async def test_json_respects_filters(self, service):
        keep = await service.create_request(dsar_payload(priority="urgent"))
        await service.create_request(dsar_payload())

        result = await service.export({"priority": "urgent"}, fmt="json")
        body = json.loads(result.content)

        assert body["count"] == 1
        assert body["requests"][0]["requestId"] == keep.request_id
        assert "daysRemaining" in body["requests"][0]

    async def test_unknown_format(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.export(fmt="xlsx")
        assert exc_info.value.fields == ["format"]


class TestBulkUpdate:
    async def test_reports_successes_and_failures(self, service, clock):
        a = await service.create_request(dsar_payload())
        b = await service.create_request(dsar_payload())
        clock.advance(hours=1)

        result = await service.bulk_update(
            [a.request_id, "DSAR-0-NOPE00", b.request_id, a.request_id],
            {"status": "in_progress", "note": "Batch triage"},
            author="Carol",
        )

        assert [r.request_id for r in result.updated] == [a.request_id, b.request_id]
        [(failed_id, error)] = result.failed
        assert failed_id == "DSAR-0-NOPE00"
        assert isinstance(error, NotFoundError)
        assert a.status == b.status == "in_progress"
        # Duplicate ids are applied once
        assert [n.note for n in a.processing_notes] == ["Batch triage"]

    async def test_failed_record_is_left_untouched(self, service):
        a = await service.create_request(dsar_payload())
        b = await service.create_request(dsar_payload())
        await service.update_request(
            b.request_id, {"status": "rejected", "rejectionReason": "no_data_found"}
        )

        # Only b already carries a rejection reason
        result = await service.bulk_update(
            [a.request_id, b.request_id], {"status": "rejected", "priority": "low"}
        )

        assert [r.request_id for r in result.updated] == [b.request_id]
        [(failed_id, error)] = result.failed
        assert failed_id == a.request_id
        assert error.fields == ["rejectionReason"]
        assert (a.status, a.priority, a.status_changes) == ("pending", "medium", [])
        assert b.priority == "low"

    async def test_expected_version_is_rejected(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.bulk_update(["DSAR-1-AAAAAA"], {"priority": "high", "expectedVersion": 1})
        assert exc_info.value.fields == ["expectedVersion"]

    async def test_empty_id_list(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.bulk_update([], {"priority": "high"})
        assert exc_info.value.fields == ["requestIds"]


class TestEventDelivery:
    async def test_events_wait_for_commit(self, service, event_bus, db_session):
        record = await service.create_request(dsar_payload())

        assert event_bus.recent() == []
        assert [e.type for e in pending_events(db_session)] == [DSAR_SUBMITTED]

        await db_session.commit()
        assert [e.request_id for e in event_bus.recent()] == [record.request_id]
        assert pending_events(db_session) == []

    async def test_rollback_discards_events(self, service, event_bus, db_session):
        record = await service.create_request(dsar_payload())
        await service.transition_status(record.request_id, "in_progress")

        await db_session.rollback()

        assert pending_events(db_session) == []
        assert event_bus.recent() == []


class TestDelete:
    async def test_delete_removes_children(self, service, db_session):
        record = await service.create_request(dsar_payload())
        await service.transition_status(record.request_id, "in_progress", note="n")

        await service.delete_request(record.request_id, deleted_by="admin-dave")

        assert await _count(db_session) == 0
        assert await _count(db_session, DSARStatusChange) == 0
        with pytest.raises(NotFoundError):
            await service.get_request(record.request_id)

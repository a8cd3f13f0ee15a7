"""Tests for the provider event value object."""

from calsync.sync.event import CalendarEvent


def test_timed_dates_decode_to_utc_storage_format():
    event = CalendarEvent(
        {
            "start": {"dateTime": "2024-02-01T11:00:00+01:00"},
            "end": {"dateTime": "2024-02-01T10:00:00", "timeZone": "Europe/Berlin"},
        }
    )

    assert event.get_start() == "2024-02-01 10:00:00"
    assert event.get_end() == "2024-02-01 09:00:00"
    assert event.get_start_date() is None


def test_naive_datetime_uses_calendar_time_zone():
    event = CalendarEvent(
        {"start": {"dateTime": "2024-07-01T12:00:00"}},
        calendar_time_zone="America/New_York",
    )

    assert event.get_start() == "2024-07-01 16:00:00"


def test_all_day_end_date_is_inclusive_locally():
    event = CalendarEvent({"start": {"date": "2024-03-01"}, "end": {"date": "2024-03-03"}})

    assert event.get_start_date() == "2024-03-01"
    assert event.get_end_date() == "2024-03-02"

    event.set_end_date("2024-03-05")
    assert event.build()["end"] == {"date": "2024-03-06"}


def test_set_start_encodes_rfc3339_utc():
    event = CalendarEvent()
    event.set_start("2024-02-01 10:00:00")

    assert event.build()["start"] == {"dateTime": "2024-02-01T10:00:00Z"}
    assert event.get_field("start") == "2024-02-01 10:00:00"


def test_source_marker_is_never_overwritten():
    event = CalendarEvent({"source": {"title": "Elsewhere"}})
    event.set_source("CalSync", "http://crm.test/#Meeting/view/1")

    assert event.get_source() == "Elsewhere"
    assert event.build()["source"]["url"] == "http://crm.test/#Meeting/view/1"


def test_constructor_copies_the_item():
    raw = {"summary": "Original"}
    event = CalendarEvent(raw)
    event.set_summary("Changed")

    assert raw["summary"] == "Original"


def test_flags():
    master = CalendarEvent({"recurrence": ["RRULE:FREQ=DAILY"]})
    instance = CalendarEvent({"recurrence": ["RRULE:FREQ=DAILY"], "recurringEventId": "m1"})
    private = CalendarEvent({"visibility": "private"})
    no_end = CalendarEvent({"endTimeUnspecified": True})
    cancelled = CalendarEvent({"status": "cancelled"})

    assert master.is_recurring_master()
    assert not instance.is_recurring_master()
    assert private.is_private()
    assert not no_end.has_end()
    assert cancelled.is_deleted()

    cancelled.restore()
    assert not cancelled.is_deleted()


def test_event_type_filter():
    assert CalendarEvent({}).is_default_type()
    assert CalendarEvent({"eventType": "default"}).is_default_type()
    assert not CalendarEvent({"eventType": "fromGmail"}).is_default_type()
    assert CalendarEvent({"eventType": "focusTime"}).is_default_type(["default", "focusTime"])


def test_updated_is_normalised_to_utc():
    event = CalendarEvent({"updated": "2024-01-15T10:30:00.123+02:00"})
    assert event.updated() == "2024-01-15 08:30:00"
    assert CalendarEvent({}).updated() is None


def test_join_url_from_first_entry_point_with_uri():
    event = CalendarEvent(
        {
            "conferenceData": {
                "entryPoints": [
                    {"entryPointType": "more"},
                    {"entryPointType": "video", "uri": "https://meet.example/abc"},
                ]
            }
        }
    )
    assert event.get_join_url() == "https://meet.example/abc"
    assert CalendarEvent({"conferenceData": "broken"}).get_join_url() is None


def test_append_join_url_is_idempotent():
    event = CalendarEvent({"description": "Agenda"})
    event.append_join_url_to_description("https://meet.example/abc")
    event.append_join_url_to_description("https://meet.example/abc")

    assert event.get_description() == "Agenda\n---\nhttps://meet.example/abc"


def test_attendee_changes_are_reported():
    event = CalendarEvent({"attendees": [{"email": "Ann@Example.com", "responseStatus": "accepted"}]})

    assert event.add_attendee("ann@example.com", "accepted") is False
    assert event.add_attendee("ann@example.com", "declined") is True
    assert event.add_attendee("bob@example.com") is True
    assert event.get_attendees() == [
        {"email": "Ann@Example.com", "responseStatus": "declined"},
        {"email": "bob@example.com", "responseStatus": "needsAction"},
    ]

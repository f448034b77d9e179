"""
test_templates.py — Localized alarm content.

Covers:
    • Language resolution and zh fallback
    • Map links (Amap marker, localized labels, unknown location)
    • Lost-contact timestamp rendering
    • Subject / HTML / text / SMS parameter rendering in zh and en

Run with:
    pytest tests/test_templates.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone

from backend.app.activity.models import Activity
from backend.app.alerts.templates import (
    build_alert_content,
    build_alert_preview,
    build_map_link,
    format_lost_contact_time,
    resolve_language,
)


DEADLINE = datetime(2026, 3, 1, 6, 30, tzinfo=timezone.utc)


def _make_activity(**overrides) -> Activity:
    fields = dict(
        id="act-1",
        phone_number="13800000000",
        user_name="Li Lei",
        activity_name="Solo hike",
        emergency_contact_phone="13900000000",
        check_in_interval_minutes=30,
        next_check_in_deadline=DEADLINE,
        last_latitude=30.25,
        last_longitude=120.15,
    )
    fields.update(overrides)
    return Activity(**fields)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestResolveLanguage:

    def test_known_languages(self):
        assert resolve_language("en") == "en"
        assert resolve_language("zh") == "zh"

    def test_case_and_whitespace(self):
        assert resolve_language(" EN ") == "en"

    def test_unknown_falls_back_to_zh(self):
        assert resolve_language("fr") == "zh"
        assert resolve_language(None) == "zh"
        assert resolve_language("") == "zh"


class TestMapLink:

    def test_amap_marker_uses_lng_lat_order(self):
        link, label = build_map_link(30.25, 120.15, "en")
        assert link.startswith("https://uri.amap.com/marker?position=120.15,30.25")
        assert label == "Last known location"

    def test_zh_label(self):
        link, label = build_map_link(30.25, 120.15, "zh")
        assert label == "最后已知位置"
        assert "name=" in link

    def test_missing_coordinates(self):
        assert build_map_link(None, None, "zh") == ("未知位置", "未知位置")
        assert build_map_link(30.0, None, "en") == ("Unknown location", "Unknown location")


class TestLostContactTime:

    def test_default_offset_is_utc_plus_8(self):
        assert format_lost_contact_time(DEADLINE, 8) == "2026-03-01 14:30 (UTC+8)"

    def test_utc(self):
        assert format_lost_contact_time(DEADLINE, 0) == "2026-03-01 06:30 (UTC)"

    def test_naive_treated_as_utc(self):
        naive = DEADLINE.replace(tzinfo=None)
        assert format_lost_contact_time(naive, 8) == "2026-03-01 14:30 (UTC+8)"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Alert content
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertContentEnglish:

    def test_subject_and_language(self):
        content = build_alert_content(_make_activity(language="en"), DEADLINE, offset_hours=8)
        assert content.language == "en"
        assert content.subject == "[EMERGENCY] Li Lei may be in danger - SaveMe App"

    def test_body_uses_english_templates(self):
        content = build_alert_content(_make_activity(language="en"), DEADLINE, offset_hours=8)
        assert "Emergency Alert" in content.html
        assert "Solo hike" in content.html
        assert "2026-03-01 14:30 (UTC+8)" in content.html
        assert "View location on map" in content.html
        assert content.map_label == "Last known location"
        assert "紧急" not in content.html

    def test_default_instructions_and_none_description(self):
        content = build_alert_content(_make_activity(language="en"), DEADLINE)
        assert "Please try to contact them immediately" in content.text
        assert "Description: None" in content.text


class TestAlertContentChinese:

    def test_default_language_is_zh(self):
        content = build_alert_content(_make_activity(), DEADLINE, offset_hours=8)
        assert content.language == "zh"
        assert content.subject == "【紧急求助】Li Lei 可能遇到危险 - 救救我 App"
        assert content.map_label == "最后已知位置"
        assert "紧急求助警报" in content.html

    def test_unknown_language_renders_zh(self):
        content = build_alert_content(_make_activity(language="de"), DEADLINE)
        assert content.language == "zh"

    def test_language_override(self):
        content = build_alert_content(_make_activity(language="zh"), DEADLINE, language="en")
        assert content.language == "en"


class TestAlertContentDetails:

    def test_display_name_falls_back_to_phone(self):
        content = build_alert_content(_make_activity(user_name=None, language="en"), DEADLINE)
        assert "13800000000" in content.subject

    def test_custom_instructions(self):
        activity = _make_activity(language="en", emergency_instructions="Call ranger station")
        content = build_alert_content(activity, DEADLINE)
        assert "Call ranger station" in content.html
        assert "Please try to contact them immediately" not in content.html

    def test_user_text_is_escaped(self):
        activity = _make_activity(language="en", activity_name="<script>x</script>")
        content = build_alert_content(activity, DEADLINE)
        assert "<script>" not in content.html
        assert "&lt;script&gt;" in content.html

    def test_no_location_block(self):
        activity = _make_activity(language="en", last_latitude=None, last_longitude=None)
        content = build_alert_content(activity, DEADLINE)
        assert content.map_link == "Unknown location"
        assert "No location coordinates are available." in content.html

    def test_lost_contact_is_the_deadline(self):
        content = build_alert_content(_make_activity(), DEADLINE)
        assert content.lost_contact_at == DEADLINE


class TestSmsParams:

    def test_keys(self):
        content = build_alert_content(_make_activity(description="Ridge trail"), DEADLINE)
        assert content.sms_params["activityId"] == "act-1"
        assert content.sms_params["name"] == "Li Lei"
        assert content.sms_params["location"] == content.map_link
        assert content.sms_params["desc"] == "Ridge trail"

    def test_description_truncated(self):
        activity = _make_activity(description="x" * 80)
        content = build_alert_content(activity, DEADLINE, sms_description_limit=50)
        desc = content.sms_params["desc"]
        assert len(desc) == 50
        assert desc.endswith("…")

    def test_short_description_untouched(self):
        content = build_alert_content(_make_activity(description="short"), DEADLINE, sms_description_limit=50)
        assert content.sms_params["desc"] == "short"


class TestPreview:

    def test_preview_mentions_activity_and_deadline(self):
        preview = build_alert_preview(_make_activity(language="en"))
        assert "Solo hike" in preview
        assert DEADLINE.isoformat() in preview
        assert preview.startswith("[EMERGENCY]")

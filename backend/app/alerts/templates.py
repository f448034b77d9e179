"""
templates.py — Localized alarm content.

Every alarm is rendered once, in the participant's language, and the same
AlertContent is handed to each channel:

    Part            zh                              en
    ──────────      ──────────────────────────      ──────────────────────────
    Subject         【紧急求助】{name} 可能遇到危险    [EMERGENCY] {name} may be in danger
    Map label       最后已知位置                      Last known location
    No location     未知位置                          Unknown location
    Description     {description} | 无               {description} | None

Unknown language codes fall back to ``zh``.

Map links use Amap marker URLs (``position=lng,lat``), which open on both
mainland and international devices.
"""

from __future__ import annotations

import html
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import quote

from backend.app.activity.models import Activity
from backend.app.alerts.models import AlertContent
from backend.app.core.config import settings

AMAP_MARKER_URL = "https://uri.amap.com/marker"
DEFAULT_LANGUAGE = "zh"

_STRINGS: Dict[str, Dict[str, str]] = {
    "zh": {
        "app_name": "救救我 App",
        "subject": "【紧急求助】{name} 可能遇到危险 - {app}",
        "heading": "紧急求助警报",
        "intro": "<strong>{name}</strong> 通过“{app}”触发了紧急预警。",
        "reason": "由于长时间未报平安（超时），系统自动发送此邮件。",
        "details": "活动详情",
        "activity": "活动名称",
        "description": "事项描述",
        "lost_at": "失联时间",
        "coords": "最后已知坐标",
        "instructions": "紧急操作指令",
        "default_instructions": (
            "请立即尝试联系当事人。如果无法取得联系，请根据情况考虑报警或联系其亲友。"
        ),
        "view_map": "在地图上查看位置",
        "map_hint": "(点击按钮将打开高德地图)",
        "no_coords": "无法获取到具体位置坐标。",
        "footer": "此邮件由“{app}”自动安全系统发出。请勿直接回复。",
        "none": "无",
        "map_label": "最后已知位置",
        "unknown_location": "未知位置",
        "text_title": "[紧急求助] 用户失联",
        "contact": "紧急联系人",
    },
    "en": {
        "app_name": "SaveMe App",
        "subject": "[EMERGENCY] {name} may be in danger - {app}",
        "heading": "Emergency Alert",
        "intro": "<strong>{name}</strong> triggered an emergency alert through {app}.",
        "reason": "They have not checked in before their deadline, so this message was sent automatically.",
        "details": "Activity details",
        "activity": "Activity",
        "description": "Description",
        "lost_at": "Contact lost at",
        "coords": "Last known coordinates",
        "instructions": "Emergency instructions",
        "default_instructions": (
            "Please try to contact them immediately. If you cannot reach them, "
            "consider calling the police or their family and friends."
        ),
        "view_map": "View location on map",
        "map_hint": "(opens Amap)",
        "no_coords": "No location coordinates are available.",
        "footer": "This email was sent automatically by the {app} safety system. Please do not reply.",
        "none": "None",
        "map_label": "Last known location",
        "unknown_location": "Unknown location",
        "text_title": "[EMERGENCY] Contact lost",
        "contact": "Emergency contact",
    },
}


def resolve_language(language: Optional[str]) -> str:
    lang = (language or "").strip().lower()
    return lang if lang in _STRINGS else DEFAULT_LANGUAGE


def strings_for(language: Optional[str]) -> Dict[str, str]:
    return _STRINGS[resolve_language(language)]


def build_map_link(
    latitude: Optional[float],
    longitude: Optional[float],
    language: Optional[str] = DEFAULT_LANGUAGE,
) -> Tuple[str, str]:
    """
    Map link for the last known position.

    Returns
    -------
    (link, label)
        An Amap marker URL and its localized label, or the localized
        unknown-location marker twice when coordinates are missing.
    """
    s = strings_for(language)
    if latitude is None or longitude is None:
        return s["unknown_location"], s["unknown_location"]
    label = s["map_label"]
    url = f"{AMAP_MARKER_URL}?position={longitude},{latitude}&name={quote(label)}"
    return url, label


def format_lost_contact_time(moment: datetime, offset_hours: Optional[float] = None) -> str:
    """Render an instant in the display offset, e.g. ``2026-10-19 14:05 (UTC+8)``."""
    hours = settings.DISPLAY_UTC_OFFSET_HOURS if offset_hours is None else offset_hours
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(timezone(timedelta(hours=hours)))
    label = f"{hours:+g}" if hours else ""
    return f"{local:%Y-%m-%d %H:%M} (UTC{label})"


def _truncate(value: str, limit: int) -> str:
    if limit <= 0 or len(value) <= limit:
        return value
    return value[: max(limit - 1, 0)] + "…"


def build_alert_content(
    activity: Activity,
    lost_contact_at: datetime,
    *,
    language: Optional[str] = None,
    offset_hours: Optional[float] = None,
    sms_description_limit: Optional[int] = None,
) -> AlertContent:
    """
    Render subject, HTML, plain text and SMS parameters for one alarm.

    Parameters
    ----------
    activity : Activity
        The activity whose deadline was missed.
    lost_contact_at : datetime
        The missed deadline. Shown to contacts as the time contact was lost.
    language : str | None
        Overrides ``activity.language``.
    """
    lang = resolve_language(language or activity.language)
    s = _STRINGS[lang]
    app = s["app_name"]
    name = activity.display_name
    map_link, map_label = build_map_link(
        activity.last_latitude, activity.last_longitude, lang,
    )
    description = activity.description or s["none"]
    instructions = activity.emergency_instructions or s["default_instructions"]
    lost_at = format_lost_contact_time(lost_contact_at, offset_hours)

    subject = s["subject"].format(name=name, app=app)

    e = html.escape
    coords_row = (
        f"<p><strong>{s['coords']}：</strong>{activity.last_latitude}, {activity.last_longitude}</p>"
        if activity.has_location else ""
    )
    map_block = (
        f"""
        <div style="text-align:center;margin:30px 0;">
          <a href="{e(map_link)}" style="background-color:#d32f2f;color:white;padding:12px 24px;text-decoration:none;border-radius:4px;font-weight:bold;display:inline-block;">{s['view_map']}</a>
          <p style="font-size:12px;color:#999;margin-top:10px;">{s['map_hint']}</p>
        </div>"""
        if activity.has_location
        else f'<p style="color:#d32f2f;font-weight:bold;">{s["no_coords"]}</p>'
    )

    html_body = f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;border:1px solid #e0e0e0;border-radius:8px;overflow:hidden;">
      <div style="background-color:#d32f2f;color:white;padding:20px;text-align:center;">
        <h1 style="margin:0;">{s['heading']}</h1>
      </div>
      <div style="padding:20px;">
        <p>{s['intro'].format(name=e(name), app=app)}</p>
        <p>{s['reason']}</p>
        <div style="background-color:#f5f5f5;padding:15px;border-radius:4px;margin:20px 0;">
          <h3 style="margin-top:0;color:#d32f2f;">{s['details']}</h3>
          <p><strong>{s['activity']}：</strong>{e(activity.activity_name)}</p>
          <p><strong>{s['description']}：</strong>{e(description)}</p>
          <p><strong>{s['lost_at']}：</strong>{lost_at}</p>
          {coords_row}
        </div>
        <div style="background-color:#fff3e0;padding:15px;border-left:5px solid #ff9800;border-radius:4px;margin:20px 0;">
          <h3 style="margin-top:0;color:#e65100;">{s['instructions']}</h3>
          <p style="white-space:pre-wrap;">{e(instructions)}</p>
        </div>
        {map_block}
        <p style="color:#666;font-size:12px;border-top:1px solid #eee;padding-top:10px;">{s['footer'].format(app=app)}</p>
      </div>
    </div>
    """

    text_body = (
        f"{s['text_title']}\n"
        f"{s['activity']}: {activity.activity_name}\n"
        f"{s['description']}: {description}\n"
        f"{s['lost_at']}: {lost_at}\n"
        f"{s['map_label']}: {map_link}\n"
        f"{s['contact']}: {activity.emergency_contact_phone}\n\n"
        f"{s['instructions']}:\n{instructions}\n"
    )

    limit = (
        settings.SMS_DESCRIPTION_MAX_CHARS
        if sms_description_limit is None else sms_description_limit
    )
    sms_params = {
        "activityId": activity.id or "",
        "name": name,
        "location": map_link,
        "desc": _truncate(description, limit),
    }

    return AlertContent(
        language=lang,
        subject=subject,
        html=html_body,
        text=text_body,
        map_link=map_link,
        map_label=map_label,
        lost_contact_at=lost_contact_at,
        sms_params=sms_params,
    )


def build_alert_preview(activity: Activity) -> str:
    """Short label for a queued deadline check: ``subject @ deadline``."""
    s = strings_for(activity.language)
    subject = s["subject"].format(name=activity.display_name, app=s["app_name"])
    return f"{subject} | {activity.activity_name} @ {activity.next_check_in_deadline.isoformat()}"

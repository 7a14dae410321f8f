"""
Google Calendar and Drive access for the events and minutes pages.

Only public data is read, using an API key. When the key or an ID is
missing every function returns an empty result and logs a warning so the
pages still render.
"""
import base64
import logging
import os
import re
import threading
from datetime import date, datetime, timezone
from urllib.parse import quote
from zoneinfo import ZoneInfo

import requests
from cachetools import TTLCache

logger = logging.getLogger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3/calendars"
DRIVE_API = "https://www.googleapis.com/drive/v3/files"
FOLDER_MIME = "application/vnd.google-apps.folder"
GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
REQUEST_TIMEOUT = 10
MAX_EVENTS = 50
CACHE_SECONDS = int(os.environ.get("GOOGLE_CACHE_SECONDS", "300"))
TIMEZONE = ZoneInfo(os.environ.get("PORTAL_TIMEZONE", "Europe/Helsinki"))

_cache = TTLCache(maxsize=64, ttl=CACHE_SECONDS)
_cache_lock = threading.Lock()


def _config():
    return {
        "api_key": os.environ.get("GOOGLE_API_KEY"),
        "calendar_id": os.environ.get("GOOGLE_CALENDAR_ID"),
        "minutes_folder_id": os.environ.get("GOOGLE_MINUTES_FOLDER_ID"),
    }


def clear_cache():
    with _cache_lock:
        _cache.clear()


def _cached(key, loader):
    with _cache_lock:
        if key in _cache:
            return _cache[key]
    value = loader()
    with _cache_lock:
        _cache[key] = value
    return value


def _get_json(url, params):
    resp = requests.get(url, params=params, timeout=REQUEST_TIMEOUT)
    resp.raise_for_status()
    return resp.json()


def _parse_event(raw):
    start = raw.get("start", {})
    end = raw.get("end", {})
    all_day = "date" in start and "dateTime" not in start
    summary = raw.get("summary") or "(no title)"
    description = raw.get("description") or ""
    is_meeting = "#meeting" in description.lower() or "kokous" in summary.lower()
    if all_day:
        start_at = datetime.combine(date.fromisoformat(start["date"]), datetime.min.time(), tzinfo=TIMEZONE)
    else:
        start_at = datetime.fromisoformat(start["dateTime"].replace("Z", "+00:00")).astimezone(TIMEZONE)
    return {
        "id": raw.get("id"),
        "title": summary,
        "description": description.replace("#meeting", "").strip(),
        "location": raw.get("location"),
        "start": start_at,
        "end": end.get("dateTime") or end.get("date"),
        "all_day": all_day,
        "type": "meeting" if is_meeting else "social",
        "url": raw.get("htmlLink"),
    }


def get_calendar_events():
    """Upcoming events, soonest first."""
    config = _config()
    if not config["api_key"] or not config["calendar_id"]:
        logger.warning("Google Calendar not configured, returning no events")
        return []

    def load():
        url = f"{CALENDAR_API}/{quote(config['calendar_id'], safe='')}/events"
        params = {
            "key": config["api_key"],
            "timeMin": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": MAX_EVENTS,
        }
        try:
            data = _get_json(url, params)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to fetch calendar events: {e}")
            return []
        events = []
        for raw in data.get("items", []):
            try:
                events.append(_parse_event(raw))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed calendar event {raw.get('id')}: {e}")
        return events

    return _cached(("events", config["calendar_id"]), load)


def get_calendar_url():
    calendar_id = os.environ.get("GOOGLE_CALENDAR_ID")
    if not calendar_id:
        return None
    return f"https://calendar.google.com/calendar/embed?src={quote(calendar_id, safe='')}"


def _list_folder(folder_id, api_key):
    params = {
        "key": api_key,
        "q": f"'{folder_id}' in parents and trashed = false",
        "fields": "files(id,name,mimeType,webViewLink,createdTime)",
        "orderBy": "name desc",
        "pageSize": 1000,
    }
    return _get_json(DRIVE_API, params).get("files", [])


def get_minutes_by_year():
    """
    Minutes grouped by year, newest year first.

    The minutes folder holds one sub-folder per year (named e.g. "2025");
    documents in it are listed newest name first.
    """
    config = _config()
    if not config["api_key"] or not config["minutes_folder_id"]:
        logger.warning("Google Drive minutes folder not configured, returning no minutes")
        return []

    def load():
        try:
            folders = _list_folder(config["minutes_folder_id"], config["api_key"])
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to list minutes folder: {e}")
            return []

        years = []
        for folder in folders:
            if folder.get("mimeType") != FOLDER_MIME or not re.fullmatch(r"\d{4}", folder.get("name", "")):
                continue
            try:
                files = _list_folder(folder["id"], config["api_key"])
            except (requests.RequestException, ValueError) as e:
                logger.error(f"Failed to list minutes for {folder['name']}: {e}")
                files = []
            years.append({
                "year": folder["name"],
                "folder_url": f"https://drive.google.com/drive/folders/{folder['id']}",
                "files": [
                    {
                        "id": f["id"],
                        "name": f["name"],
                        "url": f.get("webViewLink") or f"https://drive.google.com/file/d/{f['id']}/view",
                    }
                    for f in files if f.get("mimeType") != FOLDER_MIME
                ],
            })
        years.sort(key=lambda y: y["year"], reverse=True)
        return years

    return _cached(("minutes", config["minutes_folder_id"]), load)


def get_file_as_base64(file_id):
    """PDF content of a Drive file as base64, or None. Google Docs are exported to PDF."""
    api_key = os.environ.get("GOOGLE_API_KEY")
    if not api_key or not file_id:
        logger.warning("Google Drive not configured, cannot fetch file")
        return None
    try:
        meta = _get_json(f"{DRIVE_API}/{file_id}", {"key": api_key, "fields": "mimeType"})
        if meta.get("mimeType") == GOOGLE_DOC_MIME:
            url = f"{DRIVE_API}/{file_id}/export"
            params = {"key": api_key, "mimeType": "application/pdf"}
        else:
            url = f"{DRIVE_API}/{file_id}"
            params = {"key": api_key, "alt": "media"}
        resp = requests.get(url, params=params, timeout=REQUEST_TIMEOUT * 3)
        resp.raise_for_status()
        return base64.b64encode(resp.content).decode("ascii")
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Failed to download Drive file {file_id}: {e}")
        return None

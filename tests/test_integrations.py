"""
Tests for the Google, SMTP and OpenRouter clients with the network mocked out.
"""
import base64
import smtplib
from unittest.mock import MagicMock

import pytest
import requests
from cachetools import TTLCache

import google_client
import mailer
import openrouter


def json_response(payload, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def google_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    monkeypatch.setenv("GOOGLE_CALENDAR_ID", "committee@group.calendar.google.com")
    monkeypatch.setenv("GOOGLE_MINUTES_FOLDER_ID", "root-folder")
    google_client.clear_cache()
    yield
    google_client.clear_cache()


@pytest.fixture
def smtp_env(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_USER", "portal@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    monkeypatch.setenv("REIMBURSEMENT_EMAIL", "treasurer@example.com")


class TestGoogleCalendar:

    def test_unconfigured_returns_nothing(self):
        assert google_client.get_calendar_events() == []
        assert google_client.get_calendar_url() is None

    def test_events_are_parsed_and_cached(self, google_env, monkeypatch):
        get = MagicMock(return_value=json_response({"items": [
            {
                "id": "a",
                "summary": "Hallituksen kokous",
                "description": "Esityslista #meeting",
                "start": {"dateTime": "2026-02-03T17:00:00+02:00"},
                "end": {"dateTime": "2026-02-03T19:00:00+02:00"},
                "htmlLink": "https://calendar.google.com/event?eid=a",
            },
            {"id": "b", "start": {"date": "2026-02-10"}, "end": {"date": "2026-02-11"}},
            {"id": "broken", "start": {}},
        ]}))
        monkeypatch.setattr(google_client.requests, "get", get)

        events = google_client.get_calendar_events()
        assert [e["id"] for e in events] == ["a", "b"]
        meeting, party = events
        assert meeting["type"] == "meeting"
        assert meeting["description"] == "Esityslista"
        assert meeting["start"].hour == 17
        assert party["title"] == "(no title)"
        assert party["all_day"] is True
        assert party["type"] == "social"

        google_client.get_calendar_events()
        assert get.call_count == 1
        url = get.call_args[0][0]
        assert "committee%40group.calendar.google.com" in url
        assert get.call_args[1]["params"]["orderBy"] == "startTime"

    def test_cached_events_expire(self, google_env, monkeypatch):
        now = [0]
        monkeypatch.setattr(google_client, "_cache", TTLCache(maxsize=4, ttl=300, timer=lambda: now[0]))
        get = MagicMock(return_value=json_response({"items": []}))
        monkeypatch.setattr(google_client.requests, "get", get)

        google_client.get_calendar_events()
        now[0] = 299
        google_client.get_calendar_events()
        assert get.call_count == 1

        now[0] = 301
        google_client.get_calendar_events()
        assert get.call_count == 2

    def test_api_error_returns_nothing(self, google_env, monkeypatch):
        monkeypatch.setattr(google_client.requests, "get", MagicMock(return_value=json_response({}, status=403)))
        assert google_client.get_calendar_events() == []

    def test_calendar_url(self, google_env):
        assert google_client.get_calendar_url() == (
            "https://calendar.google.com/calendar/embed?src=committee%40group.calendar.google.com"
        )


class TestGoogleDrive:

    def test_minutes_grouped_by_year(self, google_env, monkeypatch):
        listings = {
            "root-folder": [
                {"id": "f2025", "name": "2025", "mimeType": google_client.FOLDER_MIME},
                {"id": "f2026", "name": "2026", "mimeType": google_client.FOLDER_MIME},
                {"id": "misc", "name": "Arkisto", "mimeType": google_client.FOLDER_MIME},
                {"id": "loose", "name": "ohje.pdf", "mimeType": "application/pdf"},
            ],
            "f2025": [{"id": "m1", "name": "Kokous 1/2025", "mimeType": "application/pdf"}],
            "f2026": [
                {"id": "m3", "name": "Kokous 2/2026", "mimeType": google_client.GOOGLE_DOC_MIME,
                 "webViewLink": "https://docs.google.com/document/d/m3"},
                {"id": "m2", "name": "Kokous 1/2026", "mimeType": "application/pdf"},
            ],
        }

        def fake_get(url, params=None, timeout=None):
            folder_id = params["q"].split("'")[1]
            return json_response({"files": listings[folder_id]})

        monkeypatch.setattr(google_client.requests, "get", fake_get)

        years = google_client.get_minutes_by_year()
        assert [y["year"] for y in years] == ["2026", "2025"]
        assert years[0]["folder_url"] == "https://drive.google.com/drive/folders/f2026"
        assert [f["name"] for f in years[0]["files"]] == ["Kokous 2/2026", "Kokous 1/2026"]
        assert years[0]["files"][0]["url"] == "https://docs.google.com/document/d/m3"
        assert years[0]["files"][1]["url"] == "https://drive.google.com/file/d/m2/view"

    def test_unconfigured_minutes(self):
        assert google_client.get_minutes_by_year() == []

    def test_google_doc_exported_as_pdf(self, google_env, monkeypatch):
        calls = []

        def fake_get(url, params=None, timeout=None):
            calls.append((url, params))
            if params.get("fields") == "mimeType":
                return json_response({"mimeType": google_client.GOOGLE_DOC_MIME})
            resp = json_response({})
            resp.content = b"%PDF-1.4"
            return resp

        monkeypatch.setattr(google_client.requests, "get", fake_get)

        content = google_client.get_file_as_base64("m3")
        assert base64.b64decode(content) == b"%PDF-1.4"
        assert calls[1][0].endswith("/m3/export")
        assert calls[1][1]["mimeType"] == "application/pdf"

    def test_download_failure(self, google_env, monkeypatch):
        monkeypatch.setattr(google_client.requests, "get",
                            MagicMock(side_effect=requests.ConnectionError("offline")))
        assert google_client.get_file_as_base64("m1") is None


class TestMailer:

    DETAILS = {
        "item_name": "Kahvinkeitin",
        "item_value": "39.90",
        "purchaser_name": "Matti Meikäläinen",
        "bank_account": "FI21 1234 5600 0007 85",
        "minutes_reference": "Kokous 3/2026",
        "minutes_url": "https://drive.google.com/file/d/m3/view",
        "notes": "Vanha hajosi",
    }

    def test_not_configured(self):
        assert not mailer.is_email_configured()
        result = mailer.send_reimbursement_email(self.DETAILS)
        assert not result.success
        assert result.error == "Email not configured"

    def test_body_is_bilingual(self):
        body = mailer.build_reimbursement_body(self.DETAILS)
        assert "Summa / Amount: 39.90 €" in body
        assert "Pöytäkirjan linkki / Minutes link: https://drive.google.com/file/d/m3/view" in body
        assert "Lisätiedot / Notes: Vanha hajosi" in body

    def test_send_with_attachments(self, smtp_env, monkeypatch):
        smtp = MagicMock()
        smtp_class = MagicMock()
        smtp_class.return_value.__enter__.return_value = smtp
        monkeypatch.setattr(mailer.smtplib, "SMTP", smtp_class)

        receipt = mailer.Attachment("kuitti.pdf", "application/pdf", base64.b64encode(b"%PDF").decode())
        result = mailer.send_reimbursement_email(self.DETAILS, purchase_id=12, receipts=[receipt])

        assert result.success
        assert result.message_id
        smtp_class.assert_called_once_with("smtp.example.com", 587, timeout=20)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("portal@example.com", "secret")
        msg = smtp.send_message.call_args[0][0]
        assert msg["To"] == "treasurer@example.com"
        assert msg["Subject"] == "Kulukorvaus / Reimbursement: Kahvinkeitin (#12)"
        assert [part.get_filename() for part in msg.iter_attachments()] == ["kuitti.pdf"]

    def test_smtp_failure_is_reported(self, smtp_env, monkeypatch):
        monkeypatch.setattr(mailer.smtplib, "SMTP", MagicMock(side_effect=smtplib.SMTPConnectError(421, "busy")))
        result = mailer.send_reimbursement_email(self.DETAILS, purchase_id=1)
        assert not result.success
        assert "busy" in result.error


class TestOpenRouter:

    def test_models(self, monkeypatch):
        monkeypatch.setattr(openrouter.requests, "get", MagicMock(return_value=json_response({"data": [
            {"id": "b/model", "name": "Beta", "pricing": {"prompt": "0.000002", "completion": "0.000004"}},
            {"id": "a/free", "name": "Alpha", "pricing": {"prompt": "0", "completion": "0"}},
        ]})))
        models = openrouter.get_available_models("sk-test")
        assert [m["id"] for m in openrouter.sort_models(models)] == ["a/free", "b/model"]
        assert [m["name"] for m in openrouter.sort_models(models, "name")] == ["Alpha", "Beta"]

    def test_models_without_key(self):
        assert openrouter.get_available_models(None) == []

    def test_models_request_failure(self, monkeypatch):
        monkeypatch.setattr(openrouter.requests, "get", MagicMock(side_effect=requests.Timeout("slow")))
        assert openrouter.get_available_models("sk-test") == []

    def test_format_price(self):
        assert openrouter.format_price(0) == "Free"
        assert openrouter.format_price(0.000002) == "$0.0000"
        assert openrouter.format_price(1.5) == "$1.50"

    def test_mask_api_key(self):
        assert openrouter.mask_api_key("sk-or-123") == "••••••••"
        assert openrouter.mask_api_key(None) == ""

    def test_analyze_word_counts(self, monkeypatch):
        content = 'Tässä tulos:\n{"counts": {"sauna": 3, "grilli": 5, "muu": "x"}}'
        post = MagicMock(return_value=json_response({"choices": [{"message": {"content": content}}]}))
        monkeypatch.setattr(openrouter.requests, "post", post)

        rows = openrouter.analyze_word_counts("sk-test", "test/model", ["Sauna", "Saunailta", " ", "Grilli"])
        assert rows == [{"name": "grilli", "value": 5}, {"name": "sauna", "value": 3}]
        payload = post.call_args[1]["json"]
        assert payload["model"] == "test/model"
        assert "- Saunailta" in payload["messages"][0]["content"]

    def test_analyze_requires_configuration(self):
        with pytest.raises(openrouter.AnalyticsError):
            openrouter.analyze_word_counts(None, "test/model", ["x"])
        with pytest.raises(openrouter.AnalyticsError):
            openrouter.analyze_word_counts("sk-test", None, ["x"])

    def test_analyze_empty_texts(self):
        assert openrouter.analyze_word_counts("sk-test", "test/model", ["", None]) == []

    def test_analyze_invalid_reply(self, monkeypatch):
        post = MagicMock(return_value=json_response({"choices": [{"message": {"content": "En osaa"}}]}))
        monkeypatch.setattr(openrouter.requests, "post", post)
        with pytest.raises(openrouter.AnalyticsError):
            openrouter.analyze_word_counts("sk-test", "test/model", ["Sauna"])

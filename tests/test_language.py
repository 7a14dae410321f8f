from language import (
    BilingualText,
    LanguageContext,
    build_language_context,
    normalize_language,
    resolve_language,
    serialize_locale_cookie,
    translate,
)

EVENTS = BilingualText(finnish="Tapahtumat", english="Events")


class TestResolveLanguage:

    def test_cookie_wins(self):
        assert resolve_language("sv", ["fi-FI", "en"]) == "sv"

    def test_accept_language_when_no_cookie(self):
        assert resolve_language(None, ["fi-FI", "en-US"]) == "fi"

    def test_unsupported_values_are_skipped(self):
        assert resolve_language("de", ["ja", "sv-SE"]) == "sv"

    def test_fallback(self):
        assert resolve_language(None, None) == "en"
        assert resolve_language("xx", ["zz"]) == "en"

    def test_normalize(self):
        assert normalize_language("FI_fi") == "fi"
        assert normalize_language("") is None
        assert normalize_language("de") is None

    def test_cookie_format(self):
        assert serialize_locale_cookie("sv") == "locale=sv; Path=/; SameSite=Lax"


class TestTranslate:

    def test_finnish(self):
        assert translate("nav.events", "fi") == "Tapahtumat"

    def test_missing_key_falls_back_to_english(self):
        # Swedish resources have no reimbursements entry
        assert translate("nav.reimbursements", "sv") == "Reimbursements"

    def test_unknown_key_returns_key(self):
        assert translate("nav.doesNotExist", "fi") == "nav.doesNotExist"

    def test_nested_keys(self):
        assert translate("home.options.questions.title", "en") == "Ask a question"


class TestLanguageContext:

    def test_get_text_english(self):
        assert LanguageContext("en").get_text(EVENTS) == "Events"

    def test_get_text_finnish(self):
        assert LanguageContext("fi").get_text(EVENTS) == "Tapahtumat"

    def test_swedish_uses_english_content(self):
        assert LanguageContext("sv").get_text(EVENTS) == "Events"

    def test_info_reel_is_always_finnish(self):
        assert LanguageContext("en", is_info_reel=True).get_text(EVENTS) == "Tapahtumat"

    def test_secondary_display_language(self):
        assert LanguageContext("fi", "fi", "en").secondary_display_language == "en"
        # Viewing in the secondary language shows the primary underneath
        assert LanguageContext("en", "fi", "en").secondary_display_language == "fi"

    def test_t2_uses_secondary_language(self):
        lang = LanguageContext("fi", "fi", "en")
        assert lang.t("nav.events") == "Tapahtumat"
        assert lang.t2("nav.events") == "Events"
        assert lang.t("nav.events", lng="en") == "Events"

    def test_context_from_user(self):
        lang = build_language_context("sv", user={"primary_language": "sv", "secondary_language": "fi"})
        assert lang.primary_language == "sv"
        assert lang.secondary_language == "fi"

    def test_guest_defaults(self):
        lang = build_language_context("en", guest_languages={"primary": None, "secondary": None})
        assert lang.primary_language == "fi"
        assert lang.secondary_language == "en"

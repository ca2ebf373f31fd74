"""Account line parsing."""
from datetime import datetime, timedelta

from bot.services.drafts import parse_account_lines, validate_draft
from bot.services.inventory_store import AccountDraft
from bot.services.results import ValidationError

NOW = datetime(2024, 1, 1, 12, 0, 0)


def test_parses_lines_and_skips_blanks():
    drafts = parse_account_lines(["a@x.com:pw1", "", "  b@y.org:p:w:2  "], NOW)
    assert drafts == [AccountDraft("a@x.com", "pw1"), AccountDraft("b@y.org", "p:w:2")]


def test_reports_first_bad_line_number():
    result = parse_account_lines(["a@x.com:pw", "", "no-colon-here", "bad"], NOW)
    assert isinstance(result, ValidationError)
    assert result.line_number == 3


def test_rejects_malformed_email_and_empty_secret():
    assert parse_account_lines(["not-an-email:pw"], NOW).line_number == 1
    assert parse_account_lines(["a@x.com:"], NOW).reason == "missing password"


def test_empty_batch():
    assert parse_account_lines(["", "   "], NOW) == ValidationError(0, "no accounts given")


def test_expiry_must_be_future():
    assert isinstance(validate_draft("a@x.com", "pw", NOW, expires_at=NOW), ValidationError)
    later = NOW + timedelta(days=1)
    assert validate_draft("a@x.com", "pw", NOW, expires_at=later) == AccountDraft("a@x.com", "pw", later)

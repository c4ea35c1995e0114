import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from browser_agent.exceptions import ActionExecutionError  # noqa: E402
from browser_agent.robustness import _element_supports_text_entry, exponential_backoffs, with_retries  # noqa: E402
from browser_agent.sensitive_data import SensitiveDataResolver  # noqa: E402
from browser_agent.utils import match_url_with_domain_pattern, truncate  # noqa: E402
from browser_agent.workspace import FileSystem  # noqa: E402


@pytest.mark.parametrize(
    "url, pattern, expected",
    [
        ("https://app.example.com/login", "*.example.com", True),
        ("https://example.com", "*.example.com", True),
        ("http://example.com", "https://example.com", False),
        ("https://evil.com/example.com", "example.com", False),
        ("about:blank", "*.example.com", False),
        ("chrome://settings", "*", True),
    ],
)
def test_domain_pattern_matching(url, pattern, expected):
    assert match_url_with_domain_pattern(url, pattern) is expected


def test_truncate_keeps_short_text():
    assert truncate("short", 10) == "short"
    assert truncate("a" * 20, 10) == "aaaaaaa..."


def test_scoped_secrets_only_resolve_on_matching_domain():
    resolver = SensitiveDataResolver({"token": "global", "https://*.bank.test": {"pin": "1234"}})

    on_bank = resolver.resolve({"text": "<secret>pin</secret> <secret>token</secret>"}, "https://www.bank.test")
    elsewhere = resolver.resolve("<secret>pin</secret>", "https://other.test")

    assert on_bank == {"text": "1234 global"}
    assert elsewhere == "<secret>pin</secret>"
    assert resolver.placeholders_for_url("https://other.test") == {"token"}
    assert resolver.placeholders_for_url() == {"token", "pin"}


def test_mask_prefers_longest_secret():
    resolver = SensitiveDataResolver({"short": "abc", "long": "abcdef"})

    assert resolver.mask("value abcdef") == "value <secret>long</secret>"


def test_mask_does_not_rewrite_inserted_placeholders():
    resolver = SensitiveDataResolver({"a": "longer", "b": "e"})

    assert resolver.mask("longer and e") == "<secret>a</secret> and <secret>b</secret>"


def test_workspace_rejects_unsafe_names(tmp_path):
    workspace = FileSystem(tmp_path)

    with pytest.raises(ActionExecutionError):
        workspace.write_file("../escape.md", "nope")
    with pytest.raises(ActionExecutionError):
        workspace.write_file("script.py", "nope")


def test_workspace_state_round_trip(tmp_path):
    workspace = FileSystem(tmp_path)
    workspace.write_file("notes.md", "first")
    workspace.append_file("notes.md", " second")

    restored = FileSystem.from_state(workspace.get_state())

    assert restored.list_files() == ["notes.md"]
    assert "first second" in restored.read_file("notes.md")
    assert (tmp_path / "notes.md").read_text(encoding="utf-8") == "first second"


def test_exponential_backoffs_are_capped():
    assert exponential_backoffs(1.0, 5.0, 5) == [1.0, 2.0, 4.0, 5.0]
    assert exponential_backoffs(1.0, 5.0, 1) == []


@pytest.mark.asyncio
async def test_with_retries_only_retries_listed_errors():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TimeoutError("not yet")
        return "ok"

    async def broken():
        raise KeyError("fatal")

    assert await with_retries(flaky, attempts=3, backoffs=[0, 0], retry_on=(TimeoutError,)) == "ok"
    with pytest.raises(KeyError):
        await with_retries(broken, attempts=3, backoffs=[0, 0], retry_on=(TimeoutError,))


def test_text_entry_detection():
    assert _element_supports_text_entry({"tag": "input", "type": "email"})
    assert _element_supports_text_entry({"tag": "div", "contentEditable": True})
    assert not _element_supports_text_entry({"tag": "input", "type": "checkbox"})
    assert not _element_supports_text_entry({"tag": "button"})

"""
Text passes applied to diagram source before it reaches PlantUML.

Both passes are pure and idempotent:

-   The syntax fixer quotes names and labels that contain reserved
    characters. It is pattern based and best effort, not a parser, so it
    can both miss problems and quote things that were fine.
-   The font pass injects a CJK-capable `defaultFontName` when the source
    contains Chinese, Japanese or Korean text.
"""

import logging
import re
from typing import Callable, Optional

from .locator import Platform, current_platform

logger = logging.getLogger(__name__)

SPECIAL_CHARS = re.compile(r"""[<>{}\[\]():;,|&!@#$%^*/+\-=~`'"]""")
_WHITESPACE = re.compile(r"\s")

# --- Quoting helpers ---


def _is_quoted(text: str) -> bool:
    return len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'"


def needs_quoting(text: Optional[str]) -> bool:
    """True if `text` has reserved characters or whitespace and is unquoted."""
    if not text:
        return False
    text = text.strip()
    if not text or _is_quoted(text):
        return False
    return bool(SPECIAL_CHARS.search(text) or _WHITESPACE.search(text))


def quote_if_needed(text: Optional[str]) -> Optional[str]:
    """Wrap `text` in double quotes, escaping embedded ones, if it needs it."""
    if not text or not needs_quoting(text):
        return text
    escaped = text.strip().replace('"', '\\"')
    return f'"{escaped}"'


# --- Line fixers ---
# Each one takes a single line and returns (line, warning or None).

_NAME = r'(?:"[^"]*"|\w+)'
_ARROW = r"<{0,2}[-.]+(?:\[[^\]]*\][-.]*)?>{0,2}"

_ARROW_LABEL = re.compile(
    rf"^(?P<head>\s*{_NAME}\s*{_ARROW}\s*{_NAME}\s*:\s*)(?P<text>[^\s\"'].*?)\s*$"
)
_CLASS_DECL = re.compile(
    r"^(?P<head>\s*(?:abstract\s+class|abstract|class|interface|enum|package|namespace)\s+)"
    r"(?P<text>[^\s\"'{][^{\"']*?)"
    r"(?P<tail>\s*(?:\{.*|\b(?:extends|implements|as)\b.*|<<.*)?)$"
)
_PARTICIPANT = re.compile(
    r"^(?P<head>\s*(?:participant|actor|boundary|control|entity|database|collections|queue)\s+)"
    r"(?P<text>[^\s\"'#:][^\s\"'#]*?)(?P<tail>(?:\s|<<|#).*|)$"
)
_STATE = re.compile(
    r"^(?P<head>\s*state\s+)(?P<text>[^\s\"'{:][^\"'{:]*?)"
    r"(?P<tail>\s*(?:\{.*|:.*|<<.*)?)$"
)
_NOTE = re.compile(
    r"^(?P<head>\s*note\s+(?:left|right|top|bottom|over)\b[^:\"]*?:\s*)"
    r"(?P<text>[^\s\"'].*?)\s*$",
    re.IGNORECASE,
)
_TITLE = re.compile(r"^(?P<head>\s*title\s+)(?P<text>[^\s\"'].*?)\s*$", re.IGNORECASE)

_SIMPLE_IDENTIFIER = re.compile(r"^[A-Za-z_\u4e00-\u9fa5][\w\u4e00-\u9fa5.]*$")
_ALIAS = re.compile(r"\bas\b")
_SKIPPED_LINE = re.compile(r"^\s*(?:'|@|!|skinparam\b)")

FixResult = tuple[str, Optional[str]]


def _quote_group(match: "re.Match[str]", what: str) -> FixResult:
    text = match.group("text").strip()
    if not needs_quoting(text):
        return match.string, None
    quoted = quote_if_needed(text)
    tail = match.groupdict().get("tail") or ""
    fixed = f"{match.group('head')}{quoted}{tail}"
    return fixed, f'Fixed unquoted {what}: "{text}" -> {quoted}'


def _fix_arrow_label(line: str) -> FixResult:
    match = _ARROW_LABEL.match(line)
    if not match:
        return line, None
    return _quote_group(match, "arrow label")


def _fix_class_name(line: str) -> FixResult:
    match = _CLASS_DECL.match(line)
    if not match or _SIMPLE_IDENTIFIER.match(match.group("text").strip()):
        return line, None
    return _quote_group(match, "class/interface name")


def _fix_participant_name(line: str) -> FixResult:
    match = _PARTICIPANT.match(line)
    if not match:
        return line, None
    return _quote_group(match, "participant name")


def _fix_state_name(line: str) -> FixResult:
    match = _STATE.match(line)
    if not match or _ALIAS.search(match.group("text")):
        return line, None
    return _quote_group(match, "state name")


def _fix_note_text(line: str) -> FixResult:
    match = _NOTE.match(line)
    if not match:
        return line, None
    return _quote_group(match, "note text")


def _fix_title_text(line: str) -> FixResult:
    match = _TITLE.match(line)
    if not match:
        return line, None
    return _quote_group(match, "title text")


_LINE_FIXERS: tuple[Callable[[str], FixResult], ...] = (
    _fix_arrow_label,
    _fix_class_name,
    _fix_participant_name,
    _fix_state_name,
    _fix_note_text,
    _fix_title_text,
)


def _normalize_whitespace(code: str) -> tuple[str, list[str]]:
    warnings: list[str] = []
    lines = code.split("\n")
    stripped = [line.rstrip(" \t") for line in lines]
    if stripped != lines:
        warnings.append("Removed trailing whitespace")
    fixed = "\n".join(stripped)

    collapsed = re.sub(r"\n{3,}", "\n\n", fixed)
    if collapsed != fixed:
        warnings.append("Normalized excessive blank lines")
    return collapsed, warnings


def fix_plantuml_syntax(
    code: str,
    auto_fix: bool = False,
    warn_on_fix: bool = True,
    normalize_whitespace: bool = True,
) -> str:
    """
    Quote unsafe names and labels in PlantUML source.

    Args:
        code: PlantUML source.
        auto_fix: Nothing happens unless this is set.
        warn_on_fix: Log a warning for every fix applied.
        normalize_whitespace: Also strip trailing whitespace and collapse
            runs of blank lines.

    Returns:
        The fixed source. Running it again on its own output is a no-op.
    """
    if not code or not auto_fix:
        return code

    warnings: list[str] = []
    fixed_lines = []
    for line in code.split("\n"):
        if not _SKIPPED_LINE.match(line):
            for fixer in _LINE_FIXERS:
                line, warning = fixer(line)
                if warning:
                    warnings.append(warning)
        fixed_lines.append(line)
    fixed = "\n".join(fixed_lines)

    if normalize_whitespace:
        fixed, whitespace_warnings = _normalize_whitespace(fixed)
        warnings.extend(whitespace_warnings)

    if warnings and warn_on_fix:
        logger.warning(f"PlantUML syntax fixer applied {len(warnings)} fix(es):")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    return fixed


# --- Font injection ---

_CJK = re.compile(r"[\u4e00-\u9fa5\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af]")
_HANGUL = re.compile(r"[\uac00-\ud7af]")
_THEME_LINE = re.compile(r"^(!theme\s+[^\n]+\n)", re.IGNORECASE | re.MULTILINE)
_START_LINES = (
    re.compile(r"^(@startuml\b[^\n]*\n)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^(@startgantt\b[^\n]*\n)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^(@startmindmap\b[^\n]*\n)", re.IGNORECASE | re.MULTILINE),
)

DEFAULT_FONT_SIZE = 12


def needs_font_support(text: Optional[str]) -> bool:
    """True if `text` contains Chinese, Japanese kana or Korean Hangul."""
    return bool(text) and bool(_CJK.search(text))


def has_korean(text: Optional[str]) -> bool:
    return bool(text) and bool(_HANGUL.search(text))


def default_font(code: str, platform: Optional[Platform] = None) -> str:
    """A CJK-capable font that ships with the platform."""
    platform = platform or current_platform()
    korean = has_korean(code)
    if platform == Platform.WIN32:
        return "Malgun Gothic" if korean else "Microsoft YaHei"
    if platform == Platform.DARWIN:
        return "AppleGothic" if korean else "PingFang SC"
    # Noto Sans CJK covers all three scripts
    return "Noto Sans CJK SC"


def add_font_config(
    code: str,
    font_name: Optional[str] = None,
    font_size: Optional[int] = None,
    platform: Optional[Platform] = None,
) -> str:
    """
    Inject `skinparam defaultFontName` for sources with CJK text.

    Nothing is injected when the caller picked a font, when the source
    already sets one, or when there is no CJK text. The directive goes
    after a `!theme` line (themes override fonts), else after the opening
    tag, else at the very top.
    """
    if not code or font_name:
        return code
    if "defaultFontName" in code or not needs_font_support(code):
        return code

    chosen = default_font(code, platform)
    directives = f'skinparam defaultFontName "{chosen}"\n'
    if "defaultFontSize" not in code:
        directives += f"skinparam defaultFontSize {font_size or DEFAULT_FONT_SIZE}\n"

    for pattern in (_THEME_LINE, *_START_LINES):
        if pattern.search(code):
            return pattern.sub(lambda m: m.group(1) + directives, code, count=1)

    return directives + code


def preprocess(
    source: str,
    auto_fix: bool = False,
    warn_on_fix: bool = True,
    normalize_whitespace: bool = True,
    font_name: Optional[str] = None,
    font_size: Optional[int] = None,
    platform: Optional[Platform] = None,
) -> str:
    """Syntax pass, then font pass."""
    text = fix_plantuml_syntax(
        source,
        auto_fix=auto_fix,
        warn_on_fix=warn_on_fix,
        normalize_whitespace=normalize_whitespace,
    )
    return add_font_config(
        text, font_name=font_name, font_size=font_size, platform=platform
    )

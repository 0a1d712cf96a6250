import re

_HEBREW_PATTERN = re.compile(r"[\u0590-\u05FF]")
_LATIN_PATTERN = re.compile(r"[a-zA-Z]")
_CUE_NUMBER_PATTERN = re.compile(r"^\d+$")
_VOICE_TAG_PATTERN = re.compile(r"<v\s+([^>]+)>(.*?)(?:</v>|$)")
_MARKUP_PATTERN = re.compile(r"</?[^>]+>")
_CLIENT_REFERENCE_PATTERN = re.compile(r"\[#([^\]]+)\]")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def vtt_to_plain_text(vtt_content: str) -> str:
    text_lines: list[str] = []
    in_note_block = False
    for raw_line in vtt_content.lstrip("\ufeff").splitlines():
        line = raw_line.strip()
        if not line:
            in_note_block = False
            continue
        if in_note_block:
            continue
        if line.startswith("NOTE"):
            in_note_block = True
            continue
        if line.startswith("WEBVTT") or "-->" in line or _CUE_NUMBER_PATTERN.match(line):
            continue
        text_lines.append(_strip_cue_markup(line))
    return _WHITESPACE_PATTERN.sub(" ", " ".join(part for part in text_lines if part)).strip()


def looks_like_vtt(content: str) -> bool:
    stripped = content.lstrip("\ufeff").lstrip()
    return stripped.startswith("WEBVTT") or "-->" in stripped[:500]


def normalize_transcript_content(content: str) -> str:
    content = content.lstrip("\ufeff")
    if looks_like_vtt(content):
        return vtt_to_plain_text(content)
    return _WHITESPACE_PATTERN.sub(" ", content).strip()


def detect_language(text: str) -> str:
    if _HEBREW_PATTERN.search(text):
        if _LATIN_PATTERN.search(text):
            return "mixed"
        return "he"
    if _LATIN_PATTERN.search(text):
        return "en"
    return "mixed"


def extract_client_reference(subject: str | None) -> str | None:
    if not subject:
        return None
    match = _CLIENT_REFERENCE_PATTERN.search(subject)
    if not match:
        return None
    reference = match.group(1).strip()
    return reference or None


def _strip_cue_markup(line: str) -> str:
    voice_match = _VOICE_TAG_PATTERN.match(line)
    if voice_match:
        speaker = voice_match.group(1).strip()
        spoken = _MARKUP_PATTERN.sub("", voice_match.group(2)).strip()
        return f"{speaker}: {spoken}" if spoken else ""
    return _MARKUP_PATTERN.sub("", line).strip()

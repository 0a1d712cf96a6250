import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, parse, request

from graph_notifications.core.errors import UpstreamError

QUESTIONNAIRE_VERSION = "1.0"
QUESTIONNAIRE_KEYS: tuple[str, ...] = (
    "meeting_type",
    "participants",
    "key_facts",
    "eligibility_points",
    "action_items",
    "deadlines",
    "next_steps_owner",
    "client_concerns",
    "legal_implications",
    "required_documents",
    "documents_mentioned",
    "persecuted_person",
    "family_members",
    "persecution_details",
)


class GeminiSummaryError(UpstreamError):
    pass


@dataclass
class MeetingSummaryDraft:
    summary_text: str
    summary_en: str | None = None
    summary_he: str | None = None
    action_items: list[dict[str, Any]] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    questionnaire: dict[str, Any] = field(default_factory=dict)
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary_text": self.summary_text,
            "summary_en": self.summary_en,
            "summary_he": self.summary_he,
            "action_items": [dict(item) for item in self.action_items],
            "risks": list(self.risks),
            "questionnaire": dict(self.questionnaire),
            "questionnaire_version": QUESTIONNAIRE_VERSION,
            "model": self.model,
        }


class GeminiSummaryClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 30.0,
        api_base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.max_attempts = max(max_attempts, 1)
        self.backoff_seconds = backoff_seconds

    def summarize(
        self,
        *,
        meeting_id: str | None,
        transcript_text: str,
        language: str,
        subject: str | None = None,
    ) -> MeetingSummaryDraft:
        prompt = self._build_prompt(
            meeting_id=meeting_id,
            transcript_text=transcript_text,
            language=language,
            subject=subject,
        )
        attempt = 1
        while True:
            try:
                response_payload = self._generate(prompt)
                output_text = self._extract_text_response(response_payload)
                parsed_output = self._parse_json_output(output_text)
                return self._build_draft(parsed_output)
            except GeminiSummaryError as exc:
                if not exc.transient or attempt >= self.max_attempts:
                    raise
            sleep(self.backoff_seconds * attempt)
            attempt += 1

    def _build_draft(self, parsed_output: Mapping[str, Any]) -> MeetingSummaryDraft:
        summary_en = self._clean_text(parsed_output.get("summary_en"))
        summary_he = self._clean_text(parsed_output.get("summary_he"))
        summary_text = self._clean_text(parsed_output.get("summary")) or summary_en or summary_he
        if not summary_text:
            raise GeminiSummaryError("Gemini output did not include a summary.")

        raw_action_items = parsed_output.get("action_items")
        action_items: list[dict[str, Any]] = []
        if isinstance(raw_action_items, list):
            for raw_item in raw_action_items:
                if isinstance(raw_item, Mapping) and self._clean_text(raw_item.get("task")):
                    action_items.append(
                        {
                            "owner": self._clean_text(raw_item.get("owner")),
                            "task": self._clean_text(raw_item.get("task")),
                            "due_date": self._clean_text(raw_item.get("due_date")),
                        },
                    )

        raw_risks = parsed_output.get("risks")
        risks: list[str] = []
        if isinstance(raw_risks, list):
            risks = [text for text in (self._clean_text(risk) for risk in raw_risks) if text]

        raw_questionnaire = parsed_output.get("questionnaire")
        questionnaire: dict[str, Any] = {}
        if isinstance(raw_questionnaire, Mapping):
            for key in QUESTIONNAIRE_KEYS:
                if key in raw_questionnaire:
                    questionnaire[key] = raw_questionnaire[key]

        return MeetingSummaryDraft(
            summary_text=summary_text,
            summary_en=summary_en,
            summary_he=summary_he,
            action_items=action_items,
            risks=risks,
            questionnaire=questionnaire,
            model=self.model,
        )

    def _generate(self, prompt: str) -> dict[str, Any]:
        query = parse.urlencode({"key": self.api_key})
        endpoint = f"{self.api_base_url}/models/{self.model}:generateContent?{query}"
        payload = {
            "system_instruction": {
                "parts": [
                    {
                        "text": (
                            "You are a legal intake analyst summarizing client meetings for a "
                            "citizenship law firm. Answer with valid JSON only."
                        ),
                    },
                ],
            },
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.2,
                "responseMimeType": "application/json",
            },
        }
        req = request.Request(
            endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GeminiSummaryError("Gemini API request timed out.") from exc
        except RemoteDisconnected as exc:
            raise GeminiSummaryError("Gemini API connection was closed before sending a response.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise GeminiSummaryError(
                f"Gemini API HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GeminiSummaryError(f"Gemini API connection error: {exc.reason}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GeminiSummaryError("Gemini API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GeminiSummaryError("Gemini API response is not a JSON object.")
        return parsed_body

    def _extract_text_response(self, payload: Mapping[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise GeminiSummaryError("Gemini API response missing candidates.")

        first_candidate = candidates[0]
        if not isinstance(first_candidate, Mapping):
            raise GeminiSummaryError("Gemini API response candidate is invalid.")

        content = first_candidate.get("content")
        if not isinstance(content, Mapping):
            raise GeminiSummaryError("Gemini API response missing content.")

        parts = content.get("parts")
        if not isinstance(parts, list):
            raise GeminiSummaryError("Gemini API response missing content parts.")

        chunks: list[str] = []
        for part in parts:
            if not isinstance(part, Mapping):
                continue
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        if not chunks:
            raise GeminiSummaryError("Gemini API response did not include text output.")
        return "\n".join(chunks)

    def _parse_json_output(self, raw_text: str) -> dict[str, Any]:
        direct = self._loads_json_if_possible(raw_text)
        if direct is not None:
            return direct

        start = raw_text.find("{")
        end = raw_text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise GeminiSummaryError("Gemini output is not valid JSON.")

        parsed_candidate = self._loads_json_if_possible(raw_text[start : end + 1])
        if parsed_candidate is None:
            raise GeminiSummaryError("Gemini output could not be parsed as JSON.")
        return parsed_candidate

    def _loads_json_if_possible(self, value: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return None

        if not isinstance(parsed, dict):
            return None
        return parsed

    def _clean_text(self, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        cleaned = value.strip()
        return cleaned or None

    def _build_prompt(
        self,
        *,
        meeting_id: str | None,
        transcript_text: str,
        language: str,
        subject: str | None,
    ) -> str:
        serialized_keys = json.dumps(list(QUESTIONNAIRE_KEYS))
        return (
            "Summarize this client meeting and fill the intake questionnaire.\n"
            "Write summary_en in English and summary_he in Hebrew, whatever the transcript language.\n"
            "Use only facts stated in the transcript. Use null for unknown answers.\n"
            "For family_members return {\"parents\": [], \"grandparents\": [], \"great_grandparents\": []} "
            "with objects holding full_name, birth_date, birth_place and country.\n"
            "Return JSON with this exact shape:\n"
            "{\n"
            '  "summary": "string",\n'
            '  "summary_en": "string",\n'
            '  "summary_he": "string",\n'
            '  "action_items": [{"owner": "string|null", "task": "string", "due_date": "YYYY-MM-DD|null"}],\n'
            '  "risks": ["string"],\n'
            '  "questionnaire": {"<key>": "answer"}\n'
            "}\n"
            f"questionnaire_keys: {serialized_keys}\n\n"
            f"meeting_id: {meeting_id or 'null'}\n"
            f"meeting_subject: {subject or 'null'}\n"
            f"detected_language: {language}\n"
            f"transcript:\n{transcript_text.strip()}"
        )

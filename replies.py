from __future__ import annotations

import inspect
import json
import logging
import re
from functools import lru_cache
from typing import Any, TYPE_CHECKING

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from config import env, int_env
from errors import MalformedUpstreamResponse, UpstreamFailure

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

logger = logging.getLogger("kue.replies")

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_TEXT_MODEL = "llama-3.3-70b-versatile"
DEFAULT_VISION_MODEL = "meta-llama/llama-4-scout-17b-16e-instruct"

TONE_PRESETS = {
    "casual": "relaxed and casual, like texting a friend",
    "formal": "formal and polite",
    "friendly": "warm and friendly",
    "professional": "professional and concise",
}


class ProfileDossier(BaseModel):
    name: str
    category: str
    role_title: str | None = None
    context: str | None = None
    screenshot_url: str | None = None


class Analysis(BaseModel):
    translation: str = ""
    threat_level: int = Field(default=0, ge=0, le=100)
    strategy_advice: str = ""


class ReplySet(BaseModel):
    replies: list[str]
    analysis: Analysis | None = None


def reply_count() -> int:
    return max(1, int_env("REPLY_COUNT", 3))


def describe_tone(tone: str | None) -> str:
    key = (tone or "casual").strip()
    return TONE_PRESETS.get(key.lower(), key or TONE_PRESETS["casual"])


REPLY_SCHEMA = """
Return JSON with this schema:
{
  "replies": ["...", "...", "..."],
  "analysis": {
    "translation": "what they actually mean, in one or two plain sentences",
    "threat_level": 0,
    "strategy_advice": "..."
  }
}
""".strip()


def build_reply_prompt(
    profile: ProfileDossier,
    tone: str | None,
    *,
    is_regeneration: bool = False,
    count: int | None = None,
) -> str:
    count = count or reply_count()
    who = f"Name: {profile.name}. Relationship: {profile.category}."
    if profile.role_title:
        who += f" Role: {profile.role_title}."
    details = (profile.context or "").strip() or "none"
    freshness = (
        "The user already saw one batch for this message; give completely different angles. "
        if is_regeneration
        else ""
    )
    image_hint = (
        "A screenshot of the chat is attached; use it for context. " if profile.screenshot_url else ""
    )
    return (
        "You are a witty digital wingman helping the user answer a message. "
        f"CONTEXT: {who} DETAILS: {details}. "
        f"Generate {count} distinct, human-sounding replies in a {describe_tone(tone)} vibe. "
        "Replies are written as the user, ready to send. No hashtags, no quotes around them. "
        f"{freshness}{image_hint}"
        "Also read the subtext: translate what the sender really means, rate how "
        "threatening or high-stakes the message is from 0 (harmless) to 100 (hostile), "
        "and give one line of strategy advice. "
        "Return ONE JSON object. No markdown or extra text.\n\n" + REPLY_SCHEMA
    )


def build_messages(
    message_text: str,
    profile: ProfileDossier,
    tone: str | None,
    *,
    is_regeneration: bool = False,
) -> list[Any]:
    prompt = build_reply_prompt(profile, tone, is_regeneration=is_regeneration)
    incoming = f'INCOMING MESSAGE: "{message_text}"'
    if profile.screenshot_url:
        content: Any = [
            {"type": "text", "text": incoming},
            {"type": "image_url", "image_url": {"url": profile.screenshot_url}},
        ]
    else:
        content = incoming
    return [SystemMessage(content=prompt), HumanMessage(content=content)]


def _llm_kwargs(
    api_key: str,
    model: str,
    base_url: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> dict:
    from langchain_openai import ChatOpenAI

    signature = inspect.signature(ChatOpenAI.__init__)
    params = signature.parameters
    kwargs: dict[str, object] = {"model": model}

    if "api_key" in params:
        kwargs["api_key"] = api_key
    elif "openai_api_key" in params:
        kwargs["openai_api_key"] = api_key
    if "base_url" in params:
        kwargs["base_url"] = base_url
    elif "openai_api_base" in params:
        kwargs["openai_api_base"] = base_url
    if "temperature" in params:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        if "max_tokens" in params:
            kwargs["max_tokens"] = max_tokens
        elif "max_completion_tokens" in params:
            kwargs["max_completion_tokens"] = max_tokens
    if "timeout" in params:
        kwargs["timeout"] = timeout
    elif "request_timeout" in params:
        kwargs["request_timeout"] = timeout
    if "max_retries" in params:
        kwargs["max_retries"] = 0

    return kwargs


@lru_cache(maxsize=4)
def get_llm(model: str) -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = env("LLM_API_KEY")
    if not api_key:
        raise RuntimeError("LLM_API_KEY is not set.")

    base_url = env("LLM_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL
    temperature = float(env("LLM_TEMPERATURE", "0.7") or 0.7)
    max_tokens = int_env("LLM_MAX_TOKENS", 500)
    timeout = int_env("LLM_TIMEOUT_SECONDS", 30)

    return ChatOpenAI(
        **_llm_kwargs(
            api_key=api_key,
            model=model,
            base_url=base_url,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    )


def select_model(profile: ProfileDossier) -> str:
    if profile.screenshot_url:
        return env("LLM_VISION_MODEL", DEFAULT_VISION_MODEL) or DEFAULT_VISION_MODEL
    return env("LLM_MODEL", DEFAULT_TEXT_MODEL) or DEFAULT_TEXT_MODEL


def _strip_fences(text: str) -> str:
    return re.sub(r"```(?:json)?", "", text).strip()


def _extract_json(text: str) -> Any:
    cleaned = _strip_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    for pattern in (r"\{.*\}", r"\[.*\]"):
        match = re.search(pattern, cleaned, re.DOTALL)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue
    raise MalformedUpstreamResponse("Unable to parse JSON from model response.", raw=text)


def _coerce_replies(value: Any) -> list[str]:
    if isinstance(value, dict):
        value = list(value.values())
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    replies: list[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("text") or item.get("reply") or ""
        text = str(item).strip() if item is not None else ""
        if text:
            replies.append(text)
    return replies


def _coerce_analysis(value: Any) -> Analysis | None:
    if not isinstance(value, dict):
        return None
    try:
        threat = int(round(float(value.get("threat_level") or 0)))
    except (TypeError, ValueError):
        threat = 0
    translation = str(value.get("translation") or "").strip()
    advice = str(value.get("strategy_advice") or "").strip()
    if not translation and not advice:
        return None
    return Analysis(
        translation=translation,
        threat_level=min(100, max(0, threat)),
        strategy_advice=advice,
    )


def parse_reply_content(raw: str) -> ReplySet:
    """Parse model output, raising MalformedUpstreamResponse when nothing usable is found."""
    data = _extract_json(raw)
    if isinstance(data, list):
        replies = _coerce_replies(data)
        analysis = None
    elif isinstance(data, dict):
        replies = _coerce_replies(data.get("replies"))
        analysis = _coerce_analysis(data.get("analysis"))
    else:
        replies, analysis = [], None
    if not replies:
        raise MalformedUpstreamResponse("Model response has no replies.", raw=raw)
    return ReplySet(replies=replies, analysis=analysis)


def degrade_to_raw(raw: str) -> ReplySet:
    text = _strip_fences(raw)
    return ReplySet(replies=[text] if text else [], analysis=None)


def generate_replies(
    message_text: str,
    profile: ProfileDossier,
    tone: str | None,
    *,
    is_regeneration: bool = False,
) -> ReplySet:
    model = select_model(profile)
    messages = build_messages(message_text, profile, tone, is_regeneration=is_regeneration)
    logger.info("Generating replies with %s (image: %s).", model, bool(profile.screenshot_url))
    try:
        response = get_llm(model).invoke(messages)
    except Exception as exc:
        logger.exception("LLM call failed.")
        raise UpstreamFailure("Reply generation is unavailable right now.") from exc

    raw = getattr(response, "content", None) or str(response)
    if not isinstance(raw, str):
        raw = json.dumps(raw)
    try:
        return parse_reply_content(raw)
    except MalformedUpstreamResponse:
        logger.warning("Model returned unparseable content; using raw text.")
        result = degrade_to_raw(raw)
        if not result.replies:
            raise UpstreamFailure("Reply generation returned nothing.")
        return result

"""Prompt texts and builders for the dream interpreter."""

import json
from typing import Any

INTERPRETER_ROLE = (
    "You are a gentle dream interpreter for a dream-journal chat bot. "
    "You combine archetypal symbolism with careful, supportive language. "
    "You never diagnose, never predict concrete events and never frighten. "
    "If a dream mentions self-harm, violence or a medical emergency, add a short "
    "risk flag and suggest talking to someone they trust. "
    "Reply in the language the dream is written in."
)

INTERPRET_OUTPUT_RULES = """
STRICT OUTPUT REQUIREMENTS:
- Return ONLY a JSON object with exactly this schema:
{
  "short_title": string (<=60),
  "symbols_detected": string[] (<=12),
  "barnum_insight": string (<=300),
  "esoteric_interpretation": string (<=700),
  "reflective_question": string (<=200),
  "gentle_advice": string[] (<=5),
  "risk_flags": string[] (optional),
  "paywall_teaser": string (<=140, optional)
}
- No text before or after the JSON.
- Respect every maxLength/maxItems. Tone: "poetic".
""".strip()

FOLLOWUP_OUTPUT_RULES = """
STRICT OUTPUT REQUIREMENTS:
- Answer briefly, in 2-5 sentences.
- Tone: "poetic".
- Return ONLY the plain answer text (no JSON).
""".strip()

PRACTICE_SYSTEM = (
    "You are a dream interpreter for a dream-journal chat bot. "
    "Create a short spiritual practice: a name, then 3-5 very short steps, "
    "then one closing line about its meaning or effect. "
    "Style: poetic and mystical, gentle."
)

INTERPRET_SYSTEM = f"{INTERPRETER_ROLE}\n\n{INTERPRET_OUTPUT_RULES}"
FOLLOWUP_SYSTEM = f"{INTERPRETER_ROLE}\n\n{FOLLOWUP_OUTPUT_RULES}"
REPORT_SYSTEM = INTERPRETER_ROLE

# Registry ids
INTERPRET_PROMPT_ID = "interpret.system"
FOLLOWUP_PROMPT_ID = "followup.system"
PRACTICE_PROMPT_ID = "practice.system"
REPORT_PROMPT_ID = "report.system"

SYSTEM_PROMPTS = {
    INTERPRET_PROMPT_ID: INTERPRET_SYSTEM,
    FOLLOWUP_PROMPT_ID: FOLLOWUP_SYSTEM,
    PRACTICE_PROMPT_ID: PRACTICE_SYSTEM,
    REPORT_PROMPT_ID: REPORT_SYSTEM,
}


def build_interpret_user_prompt(profile: dict[str, Any], dream_text: str, user_symbols: list[str] | None) -> str:
    payload: dict[str, Any] = {"profile": profile, "dream_text": dream_text}
    if user_symbols:
        payload["user_symbols"] = user_symbols
    return json.dumps(payload, ensure_ascii=False)


def build_followup_user_prompt(profile: dict[str, Any], dream_text: str, question: str) -> str:
    profile_json = json.dumps(profile, ensure_ascii=False)
    return f"Dreamer profile:\n{profile_json}\n\nDream:\n{dream_text}\n\nQuestion:\n{question}"


def build_practice_user_prompt(dream_text: str, interpretation: str) -> str:
    return (
        f"Dream text:\n{dream_text}\n\nInterpretation:\n{interpretation}\n\n"
        "Write the practice as a list of steps and one closing line."
    )


def build_report_user_prompt(
    period_days: int,
    count_dreams: int,
    count_interps: int,
    streak_max: int,
    top_symbols: list[tuple[str, int]],
    sentences: int,
    stress_level: int | None = None,
    sleep_goal: str | None = None,
    chronotype: str | None = None,
) -> str:
    lines = [
        f"Write a warm review of the user's dreams over {period_days} days.",
        f"Dreams: {count_dreams}. AI interpretations: {count_interps}. Longest streak: {streak_max}.",
    ]
    if top_symbols:
        lines.append("Top symbols: " + ", ".join(f"{symbol} ({count})" for symbol, count in top_symbols) + ".")
    if stress_level is not None:
        lines.append(f"Stress level: {stress_level}.")
    if sleep_goal:
        lines.append(f"Sleep goal: {sleep_goal}.")
    if chronotype:
        lines.append(f"Chronotype: {chronotype}.")
    lines.append(f"Length: {sentences} sentences. Poetic, mystical style with a friendly tone.")
    lines.append("Finish with one gentle recommendation or practice.")
    return "\n".join(lines)

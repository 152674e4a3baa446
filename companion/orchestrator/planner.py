"""
Turn planner — decides intent, tone and delivery before the reply is generated.

The planner model returns strict JSON. Unknown or missing values fall back to
defaults field by field; any failure yields the fallback plan. The plan is
rendered into one system message and never stored.
"""

import json
import logging
from typing import Optional

from ..services.context import ServiceContext
from .context import AssembledContext
from .persona import DEFAULT_PERSONA, Persona
from .types import TurnPlan

logger = logging.getLogger(__name__)

INTENTS = ("comfort", "plan", "tease", "celebrate", "clarify", "ask", "reflect", "teach")
TONES = ("warm", "playful", "thoughtful", "candid", "flirty", "neutral", "concerned")
BREVITIES = ("short", "medium", "long")
EMPATHY_LEVELS = ("low", "medium", "high")
BEATS = ("hook", "answer", "followup", "callback")

BREVITY_WORDS = {"short": "60-100", "medium": "100-160", "long": "160-250"}

PLANNER_SYSTEM = "You are a conversation planner. Output strict JSON only. No markdown, no explanations."


def fallback_plan(persona: Persona = DEFAULT_PERSONA) -> TurnPlan:
    return TurnPlan(avoid=list(persona.never_say), reasoning="fallback")


def _build_prompt(user_text: str, ctx: AssembledContext, persona: Persona) -> str:
    memory_bullets = "\n".join(
        f"- {m.content} ({m.kind.value})" for m in ctx.memories.memories
    )
    return f"""Analyze the context and decide how to respond.

USER MESSAGE: "{user_text}"

RECENT CONTEXT:
{ctx.summary or 'No prior context'}

RELEVANT MEMORIES:
{memory_bullets or 'None'}

PERSONA CONSTRAINTS:
- Never say: {', '.join(persona.never_say)}

Output ONLY valid JSON:
{{
  "intent": "<{'|'.join(INTENTS)}>",
  "tone": "<{'|'.join(TONES)}>",
  "brevity": "<{'|'.join(BREVITIES)}>",
  "empathy": "<{'|'.join(EMPATHY_LEVELS)}>",
  "beats": ["<hook|answer|followup|callback>", ...],
  "avoid": [<phrases from the never-say list>],
  "keywords": [<1-2 memory details to reference>],
  "reasoning": "<one sentence>"
}}

RULES:
- If the user is distressed: empathy=high, tone=warm or concerned, include "hook"
- If the user asks a question: beats start with "answer"
- Only add "followup" if the conversation naturally invites it
- Keywords must be specific memory details, not generic words"""


def _pick(value, allowed: tuple[str, ...], default: str) -> str:
    if isinstance(value, str) and value.lower() in allowed:
        return value.lower()
    return default


def _str_list(value) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    return [str(v) for v in value if isinstance(v, (str, int, float))]


def parse_plan(raw: str, persona: Persona = DEFAULT_PERSONA) -> TurnPlan:
    """Parse planner output. Raises ValueError when it is not a JSON object."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("planner output is not a JSON object")

    default = fallback_plan(persona)
    beats = [b for b in (_str_list(data.get("beats")) or []) if b in BEATS]
    avoid = _str_list(data.get("avoid"))
    return TurnPlan(
        intent=_pick(data.get("intent"), INTENTS, default.intent),
        tone=_pick(data.get("tone"), TONES, default.tone),
        brevity=_pick(data.get("brevity"), BREVITIES, default.brevity),
        empathy=_pick(data.get("empathy"), EMPATHY_LEVELS, default.empathy),
        beats=beats or default.beats,
        avoid=avoid if avoid is not None else default.avoid,
        keywords=(_str_list(data.get("keywords")) or [])[:2],
        reasoning=str(data.get("reasoning") or ""),
    )


async def plan_turn(
    services: ServiceContext,
    user_text: str,
    ctx: AssembledContext,
    persona: Persona = DEFAULT_PERSONA,
) -> TurnPlan:
    if not services.flags.use_planner:
        return fallback_plan(persona)

    try:
        raw = await services.llm.chat_simple(
            prompt=_build_prompt(user_text, ctx, persona),
            system=PLANNER_SYSTEM,
            model=services.settings.planner_llm_model,
            temperature=0.5,
            max_tokens=400,
            response_format={"type": "json_object"},
        )
        plan = parse_plan(raw, persona)
    except Exception as e:
        logger.warning("Planner failed, using fallback plan: %s", e)
        return fallback_plan(persona)

    logger.info("Turn plan: intent=%s tone=%s brevity=%s beats=%s",
                plan.intent, plan.tone, plan.brevity, plan.beats)
    return plan


def render_plan(plan: TurnPlan) -> str:
    lines = [
        "Delivery plan for this reply (do not mention it):",
        f"- Intent: {plan.intent}",
        f"- Tone: {plan.tone}",
        f"- Length: {plan.brevity} ({BREVITY_WORDS.get(plan.brevity, '100-160')} words)",
        f"- Empathy: {plan.empathy}",
        f"- Structure: {' → '.join(plan.beats)}",
    ]
    if plan.keywords:
        lines.append(f"- Weave in: {', '.join(plan.keywords)}")
    if plan.avoid:
        lines.append(f"- Avoid: {', '.join(plan.avoid)}")
    return "\n".join(lines)


def apply_plan(messages: list[dict], plan: TurnPlan) -> list[dict]:
    """Insert the plan after the leading system messages, before history."""
    idx = 0
    while idx < len(messages) - 1 and messages[idx]["role"] == "system":
        idx += 1
    plan_msg = {"role": "system", "content": render_plan(plan)}
    return messages[:idx] + [plan_msg] + messages[idx:]

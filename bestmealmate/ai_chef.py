"""The AI chef: answers a family's "what should we cook?" questions."""

from __future__ import annotations

import json
from typing import Any

from bestmealmate.ai_service import DEFAULT_MODEL, call_messages_api, extract_text

CHEF_MAX_TOKENS = 1024
FALLBACK_REPLY = "I apologize, but I could not generate a response."

_SYSTEM_PROMPT = """You are the AI Chef for BestMealMate, a family meal planning app.

Your job is to help families decide what to cook based on:
1. What ingredients they have (especially expiring items)
2. Each family member's dietary restrictions and allergies
3. How much time they have to cook
4. What they've eaten recently (to ensure variety)

Current context:
{context}

Guidelines:
- Always prioritize safety (allergies are serious!)
- Suggest meals that work for EVERYONE in the family
- Prefer using ingredients that are expiring soon
- Be friendly, helpful, and concise
- When suggesting a meal, explain why it's a good fit
- If asked for a recipe, provide clear step-by-step instructions"""


def build_system_prompt(context: Any) -> str:
  return _SYSTEM_PROMPT.format(context=json.dumps(context, indent=2, default=str))


def ask_chef(message: str, context: Any, *, api_key: str, model: str = DEFAULT_MODEL, timeout: float = 55) -> str:
  """Send one question to the provider and return the chef's reply text."""
  response = call_messages_api(
    [{"role": "user", "content": message}],
    api_key=api_key,
    model=model,
    max_tokens=CHEF_MAX_TOKENS,
    system=build_system_prompt(context),
    timeout=timeout,
  )
  return extract_text(response) or FALLBACK_REPLY


__all__ = ["ask_chef", "build_system_prompt", "FALLBACK_REPLY"]

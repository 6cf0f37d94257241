"""AI advisor: news themes, theme-to-ticker mapping and the final holding proposal."""

import json
import logging
import os
import re
import subprocess
from typing import Any, Dict, List

import requests

import settings
from config import MAX_POSITIONS
from errors import AIProviderError, MalformedProposal
from strategy_config import CLAUDE_CLI, PROMPTS, QWEN

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def extract_json(text: str) -> str:
    """Pull the JSON array or object out of a chatty model response."""
    if not text:
        return ""
    clean = _FENCE.sub("", text).strip()

    first_square = clean.find("[")
    first_curly = clean.find("{")
    if first_square != -1 and (first_curly == -1 or first_square < first_curly):
        start, end = first_square, clean.rfind("]")
    elif first_curly != -1:
        start, end = first_curly, clean.rfind("}")
    else:
        return clean

    if end > start:
        return clean[start:end + 1]
    return clean


def parse_json_payload(text: str) -> Any:
    """Parse a model response into JSON; raises MalformedProposal."""
    json_str = extract_json(text)
    if not json_str:
        raise MalformedProposal("Empty AI response")
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedProposal(f"AI response is not valid JSON: {e}") from e


def call_claude(prompt: str, model_name: str = "") -> str:
    """Call the claude CLI and return its text output."""
    cmd = [CLAUDE_CLI["command"], "-p", prompt, "--output-format", "text"]
    if model_name:
        cmd += ["--model", model_name]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=CLAUDE_CLI["timeout"],
        )
    except FileNotFoundError as e:
        raise AIProviderError(f"Claude CLI not found: {CLAUDE_CLI['command']}") from e
    except subprocess.TimeoutExpired as e:
        raise AIProviderError("Claude CLI timed out") from e

    if result.returncode != 0:
        raise AIProviderError(f"Claude CLI error: {result.stderr.strip()[:500]}")

    return result.stdout.strip()


def call_qwen(prompt: str, model_name: str = "", temperature: float = 0.7) -> str:
    """Call Qwen through its OpenAI-compatible chat completions endpoint."""
    api_key = os.environ.get(QWEN["api_key_env"])
    if not api_key:
        raise AIProviderError(f"{QWEN['api_key_env']} missing for Qwen")

    try:
        resp = requests.post(
            QWEN["url"],
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            json={
                "model": model_name or QWEN["default_model"],
                "messages": [{"role": "user", "content": prompt}],
                "temperature": temperature,
            },
            timeout=120,
        )
    except requests.exceptions.RequestException as e:
        raise AIProviderError(f"Qwen request failed: {e}") from e

    if resp.status_code != 200:
        raise AIProviderError(f"Qwen API error: {resp.status_code} {resp.text[:300]}")

    try:
        return resp.json()["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise AIProviderError(f"Unexpected Qwen response shape: {e}") from e


def call_ai(step_key: str, prompt: str) -> str:
    """Dispatch a prompt to the provider configured for a pipeline step.

    Saved runtime settings override the strategy_config defaults.
    """
    step = settings.default_store().get(step_key)
    provider = step.provider
    model_name = step.model_name
    logger.info("[AI] Step: %s | Provider: %s | Model: %s", step_key, provider, model_name or "default")

    if provider == "qwen":
        return call_qwen(prompt, model_name, step.temperature)
    if provider == "claude":
        return call_claude(prompt, model_name)
    raise AIProviderError(f"Unknown AI provider: {provider}")


def render_prompt(step_key: str, **values) -> str:
    """Fill the step's prompt template; a broken custom template falls back to the default."""
    template = settings.default_store().get(step_key).prompt_template
    try:
        return template.format(**values)
    except (KeyError, IndexError, ValueError) as e:
        logger.warning("[Config] Custom prompt for %s is invalid (%s), using default", step_key, e)
        return PROMPTS[step_key].format(**values)


def fetch_news_and_themes(today: str) -> Dict:
    """Layer 1: news summary and hot theme keywords."""
    payload = parse_json_payload(call_ai("layer1_news", render_prompt("layer1_news", today=today)))
    if not isinstance(payload, dict):
        raise MalformedProposal("Layer 1 response is not an object")

    themes = payload.get("themes")
    return {
        "newsSummary": str(payload.get("newsSummary") or ""),
        "themes": [t for t in themes if isinstance(t, dict)] if isinstance(themes, list) else [],
    }


def map_themes_to_candidates(themes: List[Dict]) -> List[Dict]:
    """Layer 2: theme keywords to raw ticker candidates."""
    prompt = render_prompt("layer2_mapping", themes=json.dumps(themes, ensure_ascii=False, indent=2))
    payload = parse_json_payload(call_ai("layer2_mapping", prompt))
    if not isinstance(payload, list):
        raise MalformedProposal("Layer 2 response is not an array")
    return [c for c in payload if isinstance(c, dict) and c.get("code")]


def build_decision_prompt(context: Dict) -> str:
    """Layer 3 prompt from keepers, screened candidates and the market summary."""
    keepers = [
        {
            "code": p.code,
            "name": p.name,
            "entryPrice": p.entry_price,
            "roi": round(p.roi, 2),
        }
        for p in context.get("keepers", [])
    ]
    return render_prompt(
        "layer3_decision",
        news_summary=context.get("marketSummary", ""),
        current_portfolio=json.dumps(keepers, ensure_ascii=False, indent=2),
        candidates=json.dumps(context.get("candidates", []), ensure_ascii=False, indent=2),
        max_positions=MAX_POSITIONS,
    )


def propose(context: Dict) -> Any:
    """Layer 3: ask the model for the final holding list.

    Returns the parsed payload unvalidated; the reconciler is the only
    authority on what survives.
    """
    prompt = build_decision_prompt(context)
    return parse_json_payload(call_ai("layer3_decision", prompt))

"""
AI Strategy Configuration

Edit this file to control how the language models pick themes, map them to
tickers and propose the final portfolio.
The PROMPTS section is natural language - write it however makes sense to you.
Hard limits (size cap, stop loss, RSI thresholds) live in config.py and are
enforced by the reconciler regardless of what the model proposes.
"""

import os

# =============================================================================
# AI PROVIDERS PER STEP
# =============================================================================
# provider: "claude" (local claude CLI) or "qwen" (OpenAI-compatible endpoint)

AI_STEPS = {
    "layer1_news": {
        "provider": os.environ.get("REBALANCER_LAYER1_PROVIDER", "claude"),
        "model_name": os.environ.get("REBALANCER_LAYER1_MODEL", ""),
        "temperature": 0.7,
    },
    "layer2_mapping": {
        "provider": os.environ.get("REBALANCER_LAYER2_PROVIDER", "claude"),
        "model_name": os.environ.get("REBALANCER_LAYER2_MODEL", ""),
        "temperature": 0.7,
    },
    "layer3_decision": {
        "provider": os.environ.get("REBALANCER_LAYER3_PROVIDER", "claude"),
        "model_name": os.environ.get("REBALANCER_LAYER3_MODEL", ""),
        "temperature": 0.5,
    },
}

QWEN = {
    "url": "https://dashscope-intl.aliyuncs.com/compatible-mode/v1/chat/completions",
    "api_key_env": "DASHSCOPE_API_KEY",
    "default_model": "qwen-turbo",
}

CLAUDE_CLI = {
    "command": os.environ.get("REBALANCER_CLAUDE_CMD", "claude"),
    "timeout": 180,
}

# =============================================================================
# PROMPTS
# =============================================================================
# Placeholders: {today}, {themes}, {news_summary}, {current_portfolio}, {candidates}, {max_positions}

PROMPTS = {
    "layer1_news": """You are the chief intelligence officer watching global markets for a Taiwan equity fund.
Task: scan today's ({today}) global and Taiwan financial news and find where money is flowing
and which themes are hot.

Focus on:
1. Global: strong US sectors (AI, semiconductors, old economy), Fed stance, Treasury yields.
2. Commodities: oil, gold, copper, shipping indices (SCFI/BDI).
3. Taiwan: local policy (power grid, property), earnings calls, monthly revenue releases.

Rules:
- Do NOT pick stocks, only extract theme keywords.
- Breadth first: cover old economy, financials and raw materials too.

Respond with ONLY a JSON object:
{{
  "newsSummary": "Bullet-point summary of today's market, one point per line, using the • symbol",
  "themes": [
    {{ "keyword": "Shipping", "impact": "High", "summary": "Red Sea crisis escalates, freight rates rising." }}
  ]
}}""",

    "layer2_mapping": """You are a senior analyst who knows the Taiwan industrial supply chain.

Today's hot themes:
{themes}

Task: for every theme keyword, list the matching Taiwan-listed stocks.
1. Direct links: e.g. "freight rates up" -> the three container carriers.
2. Second-order links: e.g. "copper up" -> wire and cable / PCB makers.
3. At least 3-5 stocks per theme.

Respond with ONLY a JSON array of objects with code and name:
[
  {{ "code": "2330", "name": "TSMC", "theme": "AI" }},
  {{ "code": "2603", "name": "Evergreen Marine", "theme": "Shipping" }}
]""",

    "layer3_decision": """You are a hedge fund manager chasing short-term momentum in Taiwan equities.

## MARKET SUMMARY
{news_summary}

## CURRENT HOLDINGS (LOCKED)
These holdings passed the technical firewall and MUST be kept. Do not sell them.
{current_portfolio}

## CANDIDATES
Pick the strongest names to fill the remaining slots. Pay attention to the RSI in tech_note:
prefer RSI > 55 momentum names, avoid RSI < 45.
{candidates}

## YOUR TASK
1. You already hold the locked positions. Check how many slots remain (max {max_positions} holdings).
2. Fill the remaining slots with the best candidates.
3. If no candidate is good enough, leave slots empty.
4. For every holding give a full reason: the technical picture at decision time and the industry view.

Respond with ONLY a JSON array (the final portfolio):
[
  {{ "code": "2330", "name": "TSMC", "reason": "[Hold] ...", "industry": "Semiconductors", "status": "HOLD" }},
  {{ "code": "2603", "name": "Evergreen Marine", "reason": "[New] ...", "industry": "Shipping", "status": "BUY" }}
]""",
}

# =============================================================================
# SCHEDULE
# =============================================================================

SCHEDULE = {
    "run_time": "08:30",            # Asia/Taipei, before the 09:00 open
    "check_interval_minutes": 5,
    "trade_days": [0, 1, 2, 3, 4],  # Monday=0 through Friday=4
}

# =============================================================================
# LOGGING
# =============================================================================

LOGGING = {
    "level": os.environ.get("REBALANCER_LOG_LEVEL", "INFO"),
    "log_file": os.environ.get("REBALANCER_RUN_LOG", "data/run_log.json"),
    "max_sessions": 1000,           # Older run sessions are dropped
    "verbose": True,                # Print run summaries to console
}

# =============================================================================
# ADMIN
# =============================================================================

ADMIN_PASSWORD_ENV = "REBALANCER_ADMIN_PASSWORD"

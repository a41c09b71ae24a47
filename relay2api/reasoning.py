"""
推理 (thinking) 配置规范化

各协议的请求端推理配置统一为两种形态之一：
- ReasoningConfig(mode="enabled", budget_tokens=int)
- ReasoningConfig(mode="adaptive", effort_level="low"|"medium"|"high")

无法识别的输入一律视为"未配置"（返回 None），永远不会报错。
"""

from typing import Any, Dict, Optional

from log import log

from .models import ReasoningConfig

__all__ = [
    "EFFORT_BUDGETS",
    "DEFAULT_EFFORT_BUDGET",
    "VALID_EFFORTS",
    "normalize_reasoning_config",
    "effort_to_budget",
    "budget_to_effort",
    "reasoning_from_claude",
    "reasoning_from_openai",
    "reasoning_from_responses",
    "reasoning_from_gemini",
    "reasoning_to_claude",
    "reasoning_to_openai_effort",
    "reasoning_to_gemini",
]

EFFORT_BUDGETS: Dict[str, int] = {
    "low": 2048,
    "medium": 8192,
    "high": 20000,
}
DEFAULT_EFFORT_BUDGET = 20000
VALID_EFFORTS = tuple(EFFORT_BUDGETS)


def _coerce_int(value: Any) -> Optional[int]:
    """整数或数字字符串 → int；bool 与其他类型返回 None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


def normalize_reasoning_config(value: Any) -> Optional[ReasoningConfig]:
    """
    规范化一个 thinking 配置对象

    Examples:
        {"type": "enabled", "budget_tokens": "10000"} → enabled(10000)
        {"type": "adaptive", "effort": "Medium"}      → adaptive("medium")
        "enabled"                                      → None
    """
    if isinstance(value, ReasoningConfig):
        return value
    if not isinstance(value, dict):
        return None

    mode = value.get("type", value.get("mode"))
    if not isinstance(mode, str):
        return None
    mode = mode.strip().lower()

    if mode == "enabled":
        budget = _coerce_int(value.get("budget_tokens", value.get("budgetTokens")))
        if budget is None or budget <= 0:
            log.debug(f"Ignoring thinking config without usable budget: {value}", tag="REASONING")
            return None
        return ReasoningConfig.enabled(budget)

    if mode == "adaptive":
        effort = value.get("effort", value.get("effort_level", value.get("effortLevel")))
        if not isinstance(effort, str) or effort.strip().lower() not in VALID_EFFORTS:
            log.debug(f"Ignoring adaptive thinking config with effort={effort!r}", tag="REASONING")
            return None
        return ReasoningConfig.adaptive(effort.strip().lower())

    return None


def effort_to_budget(effort: Any) -> ReasoningConfig:
    """reasoning_effort 枚举 → enabled 预算（未知值取 20000）"""
    key = effort.strip().lower() if isinstance(effort, str) else ""
    return ReasoningConfig.enabled(EFFORT_BUDGETS.get(key, DEFAULT_EFFORT_BUDGET))


def budget_to_effort(budget_tokens: int) -> str:
    if budget_tokens <= EFFORT_BUDGETS["low"]:
        return "low"
    if budget_tokens <= EFFORT_BUDGETS["medium"]:
        return "medium"
    return "high"


# ====================== 各协议来源 ======================

def reasoning_from_claude(body: Dict[str, Any]) -> Optional[ReasoningConfig]:
    return normalize_reasoning_config(body.get("thinking"))


def reasoning_from_openai(body: Dict[str, Any]) -> Optional[ReasoningConfig]:
    """
    OpenAI chat 的推理配置来源，优先级：
    1. extra_body.anthropic.thinking
    2. 顶层 thinking
    3. reasoning_effort
    """
    extra_body = body.get("extra_body")
    if isinstance(extra_body, dict):
        anthropic = extra_body.get("anthropic")
        if isinstance(anthropic, dict) and "thinking" in anthropic:
            config = normalize_reasoning_config(anthropic.get("thinking"))
            if config is not None:
                return config

    if "thinking" in body:
        config = normalize_reasoning_config(body.get("thinking"))
        if config is not None:
            return config

    effort = body.get("reasoning_effort")
    if effort is not None:
        return effort_to_budget(effort)
    return None


def reasoning_from_responses(body: Dict[str, Any]) -> Optional[ReasoningConfig]:
    reasoning = body.get("reasoning")
    if isinstance(reasoning, dict) and reasoning.get("effort") is not None:
        return effort_to_budget(reasoning.get("effort"))
    return None


def reasoning_from_gemini(generation_config: Dict[str, Any]) -> Optional[ReasoningConfig]:
    """
    generationConfig.thinkingConfig:
    - thinkingBudget > 0  → enabled
    - thinkingBudget == -1 (动态) → adaptive high
    - thinkingLevel       → adaptive
    """
    thinking = generation_config.get("thinkingConfig") if isinstance(generation_config, dict) else None
    if not isinstance(thinking, dict):
        return None

    level = thinking.get("thinkingLevel")
    if isinstance(level, str) and level.strip().lower() in VALID_EFFORTS:
        return ReasoningConfig.adaptive(level.strip().lower())

    budget = _coerce_int(thinking.get("thinkingBudget"))
    if budget is None or budget == 0:
        return None
    if budget < 0:
        return ReasoningConfig.adaptive("high")
    return ReasoningConfig.enabled(budget)


# ====================== 输出到各协议 ======================

def reasoning_to_claude(config: Optional[ReasoningConfig]) -> Optional[Dict[str, Any]]:
    if config is None:
        return None
    if config.mode == "adaptive":
        return {"type": "adaptive", "effort": config.effort_level}
    return {"type": "enabled", "budget_tokens": config.budget_tokens}


def reasoning_to_openai_effort(config: Optional[ReasoningConfig]) -> Optional[str]:
    if config is None:
        return None
    if config.mode == "adaptive":
        return config.effort_level
    return budget_to_effort(config.budget_tokens or DEFAULT_EFFORT_BUDGET)


def reasoning_to_gemini(config: Optional[ReasoningConfig]) -> Optional[Dict[str, Any]]:
    if config is None:
        return None
    if config.mode == "adaptive":
        budget = EFFORT_BUDGETS.get(config.effort_level, DEFAULT_EFFORT_BUDGET)
    else:
        budget = config.budget_tokens
    return {"thinkingBudget": budget, "includeThoughts": True}

"""
配置加载器

- gateway.yaml：网关配置，支持 ${VAR:default} 环境变量替换
- 模型路由规则：模型名（前缀 / 精确）→ 提供商类型，可选改写目标模型
- 凭证池文件（YAML 或 JSON）：{provider_type: [凭证, ...]}，由 pydantic 校验
"""

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from log import log

from .errors import ConfigurationError

__all__ = [
    "expand_env_vars",
    "load_yaml_config",
    "ModelRoutingRule",
    "load_model_routing",
    "match_model_route",
    "PoolEntryModel",
    "load_provider_pools",
]

_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*?)(?::([^}]*))?\}')


def _coerce(result: str) -> Any:
    lowered = result.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False

    try:
        if "." in result:
            return float(result)
        return int(result)
    except ValueError:
        pass

    if result.startswith("[") and result.endswith("]"):
        try:
            return json.loads(result)
        except (json.JSONDecodeError, ValueError):
            pass

    return result


def expand_env_vars(value: Any) -> Any:
    """
    递归展开环境变量

    支持语法：${VAR_NAME:default_value}

    只有包含占位符的字符串会做类型转换（布尔 / 数字 / JSON 列表），
    普通字符串原样返回。

    Examples:
        >>> os.environ["TEST_VAR"] = "hello"
        >>> expand_env_vars("${TEST_VAR:world}")
        'hello'
        >>> expand_env_vars("${MISSING_VAR:42}")
        42
    """
    if isinstance(value, str):
        if not _ENV_PATTERN.search(value):
            return value

        def replacer(match):
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(match.group(1), default_value)

        return _coerce(_ENV_PATTERN.sub(replacer, value))

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    elif isinstance(value, dict):
        return {key: expand_env_vars(val) for key, val in value.items()}

    return value


def load_yaml_config(config_path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """
    读取 YAML 配置并展开环境变量

    文件不存在时返回空字典；格式错误抛出 ConfigurationError。
    """
    if not config_path:
        return {}
    path = Path(config_path)
    if not path.exists():
        log.debug(f"Config file not found, using defaults: {path}", tag="CONFIG")
        return {}

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return expand_env_vars(raw)


# ====================== 模型路由 ======================

@dataclass
class ModelRoutingRule:
    """
    模型路由规则

    Attributes:
        pattern: 模型名；以 * 结尾表示前缀匹配
        provider: 目标提供商类型
        model: 改写后的目标模型（None 保持原名）
        enabled: 是否启用
    """
    pattern: str
    provider: str
    model: Optional[str] = None
    enabled: bool = True

    @property
    def is_prefix(self) -> bool:
        return self.pattern.endswith("*")

    def matches(self, model_name: str) -> bool:
        if not self.enabled:
            return False
        name = model_name.lower()
        if self.is_prefix:
            return name.startswith(self.pattern[:-1].lower())
        return name == self.pattern.lower()

    def __repr__(self) -> str:
        return f"ModelRoutingRule({self.pattern} -> {self.provider})"


def load_model_routing(raw: Any) -> List[ModelRoutingRule]:
    """
    解析 model_routing 配置节

    支持两种格式：
    1. 简写: {"claude-*": "claude-kiro-oauth"}
    2. 完整: {"gpt-4o": {"provider": "openai-custom", "model": "gpt-4o-2024-08-06"}}
    """
    if not raw:
        return []
    if not isinstance(raw, dict):
        raise ConfigurationError("'model_routing' must be a mapping")

    rules: List[ModelRoutingRule] = []
    for pattern, rule_data in raw.items():
        if isinstance(rule_data, str):
            rules.append(ModelRoutingRule(pattern=str(pattern), provider=rule_data))
        elif isinstance(rule_data, dict):
            provider = rule_data.get("provider")
            if not provider:
                raise ConfigurationError(f"Routing rule '{pattern}' is missing 'provider'")
            rules.append(ModelRoutingRule(
                pattern=str(pattern),
                provider=str(provider),
                model=rule_data.get("model"),
                enabled=bool(rule_data.get("enabled", True)),
            ))
        else:
            raise ConfigurationError(f"Routing rule '{pattern}' has unsupported format")

    # 精确匹配优先，其次更长的前缀
    rules.sort(key=lambda r: (r.is_prefix, -len(r.pattern)))
    return rules


def match_model_route(rules: List[ModelRoutingRule], model_name: str) -> Optional[ModelRoutingRule]:
    for rule in rules:
        if rule.matches(model_name):
            return rule
    return None


# ====================== 凭证池文件 ======================

class PoolEntryModel(BaseModel):
    """
    凭证池条目

    已知字段之外的内容（token、cookie、api key、base_url ...）原样保留为 secret。
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    uuid: Optional[str] = Field(default=None, description="凭证唯一标识")
    custom_name: Optional[str] = Field(default=None, alias="customName", description="显示名称")
    is_disabled: bool = Field(default=False, alias="isDisabled", description="是否禁用")
    error_count: int = Field(default=0, alias="errorCount", ge=0, description="初始错误计数")
    last_sync_at: Optional[float] = Field(default=None, alias="lastSyncAt", description="上次同步时间戳")

    def to_record_dict(self) -> Dict[str, Any]:
        data = dict(self.model_extra or {})
        if self.uuid:
            data["uuid"] = self.uuid
        if self.custom_name:
            data["customName"] = self.custom_name
        data["isDisabled"] = self.is_disabled
        data["errorCount"] = self.error_count
        if self.last_sync_at is not None:
            data["lastSyncAt"] = self.last_sync_at
        return data


def load_provider_pools(pools_path: Optional[Union[str, Path]]) -> Dict[str, List[Dict[str, Any]]]:
    """
    加载凭证池文件

    Returns:
        {provider_type: [凭证 dict, ...]}；文件不存在时返回空字典

    Raises:
        ConfigurationError: 文件格式错误或条目校验失败
    """
    if not pools_path:
        return {}
    path = Path(pools_path)
    if not path.exists():
        log.warning(f"Provider pools file not found: {path}", tag="CONFIG")
        return {}

    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    try:
        if path.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Invalid provider pools file {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Provider pools file {path} must map provider types to lists")

    raw = expand_env_vars(raw)
    pools: Dict[str, List[Dict[str, Any]]] = {}
    for provider_type, entries in raw.items():
        if not isinstance(entries, list):
            raise ConfigurationError(f"Pool '{provider_type}' must be a list of credentials")
        validated = []
        for idx, entry in enumerate(entries):
            try:
                validated.append(PoolEntryModel.model_validate(entry).to_record_dict())
            except ValidationError as e:
                raise ConfigurationError(f"Invalid credential #{idx} in pool '{provider_type}': {e}") from e
        pools[str(provider_type)] = validated
    return pools

"""
Configuration for the relay2api gateway.
Centralizes all configuration to avoid duplication across modules.

- 启动时调用 init_config() 把 YAML 配置文件加载到内存
- 修改配置文件后调用 reload_config() 重新加载
- 读取优先级: 环境变量 > 配置文件 > 默认值
- load_settings() 返回运行时只读的 GatewaySettings
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from log import log
from relay2api.config_loader import ModelRoutingRule, load_model_routing, load_yaml_config
from relay2api.converters.registry import PROVIDER_PROTOCOLS
from relay2api.errors import ConfigurationError
from relay2api.pool.manager import PoolSettings

# 全局配置缓存
_config_cache: Dict[str, Any] = {}
_config_initialized = False

DEFAULT_CONFIG_FILE = "config/gateway.yaml"

_TRUE_VALUES = ("true", "1", "yes", "on")


# ====================== 配置系统 ======================

def get_config_file() -> str:
    """
    Get gateway config file path.

    Environment variable: RELAY_CONFIG_FILE
    Default: config/gateway.yaml
    """
    return os.getenv("RELAY_CONFIG_FILE", DEFAULT_CONFIG_FILE)


def init_config(path: Optional[str] = None) -> None:
    """初始化配置缓存（启动时调用一次）"""
    global _config_cache, _config_initialized

    if _config_initialized and path is None:
        return

    _config_cache = load_yaml_config(path or get_config_file())
    _config_initialized = True


def reload_config(path: Optional[str] = None) -> None:
    """重新加载配置（修改配置文件后调用）"""
    global _config_initialized
    _config_initialized = False
    init_config(path)


def _get_cached_config(key: str, default: Any = None) -> Any:
    """从内存缓存获取配置，支持 a.b 形式的嵌套键"""
    value: Any = _config_cache
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value


def get_config_value(key: str, default: Any = None, env_var: Optional[str] = None) -> Any:
    """Get configuration value with priority: ENV > config file > default."""
    if not _config_initialized:
        init_config()

    # Priority 1: Environment variable
    if env_var and os.getenv(env_var):
        return os.getenv(env_var)

    # Priority 2: Memory cache
    value = _get_cached_config(key)
    if value is not None:
        return value

    return default


def _get_bool(key: str, default: bool, env_var: str) -> bool:
    value = get_config_value(key, default, env_var)
    if isinstance(value, str):
        return value.lower() in _TRUE_VALUES
    return bool(value)


def _get_int(key: str, default: int, env_var: str) -> int:
    value = get_config_value(key, default, env_var)
    try:
        return int(value)
    except (TypeError, ValueError):
        log.warning(f"Invalid integer for {key}: {value!r}, using {default}", tag="CONFIG")
        return default


def _get_float(key: str, default: float, env_var: str) -> float:
    value = get_config_value(key, default, env_var)
    try:
        return float(value)
    except (TypeError, ValueError):
        log.warning(f"Invalid number for {key}: {value!r}, using {default}", tag="CONFIG")
        return default


# Server Configuration
def get_server_host() -> str:
    """
    Get server host setting.

    Environment variable: HOST
    Config key: server.host
    Default: 0.0.0.0
    """
    return str(get_config_value("server.host", "0.0.0.0", "HOST"))


def get_server_port() -> int:
    """
    Get server port setting.

    Environment variable: PORT
    Config key: server.port
    Default: 7861
    """
    return _get_int("server.port", 7861, "PORT")


def get_api_password() -> str:
    """
    Get API password setting for chat endpoints.

    Environment variable: API_PASSWORD
    Config key: server.api_password
    Default: empty (no authentication)
    """
    return str(get_config_value("server.api_password", "", "API_PASSWORD") or "")


def get_proxy_config() -> Optional[str]:
    """Get outbound proxy configuration."""
    proxy_url = get_config_value("transport.proxy", env_var="PROXY")
    return str(proxy_url) if proxy_url else None


# ==================== 凭证池配置 ====================

def get_credential_switch_max_retries() -> int:
    """
    单个提供商内最多切换凭证的次数。

    Environment variable: CREDENTIAL_SWITCH_MAX_RETRIES
    Config key: pool.credential_switch_max_retries
    Default: 5
    """
    return _get_int("pool.credential_switch_max_retries", 5, "CREDENTIAL_SWITCH_MAX_RETRIES")


def get_max_error_count() -> int:
    """
    凭证累计错误达到该值后被禁用。

    Environment variable: MAX_ERROR_COUNT
    Config key: pool.max_error_count
    Default: 10
    """
    return _get_int("pool.max_error_count", 10, "MAX_ERROR_COUNT")


def get_cron_near_minutes() -> float:
    """
    用量同步超过该分钟数视为过期，需要后台刷新。

    Environment variable: CRON_NEAR_MINUTES
    Config key: pool.cron_near_minutes
    Default: 15
    """
    return _get_float("pool.cron_near_minutes", 15, "CRON_NEAR_MINUTES")


def get_reset_error_count_on_success() -> bool:
    """
    Environment variable: RESET_ERROR_COUNT_ON_SUCCESS
    Config key: pool.reset_error_count_on_success
    Default: True
    """
    return _get_bool("pool.reset_error_count_on_success", True, "RESET_ERROR_COUNT_ON_SUCCESS")


def get_reset_error_count_on_usage_sync() -> bool:
    """
    Environment variable: RESET_ERROR_COUNT_ON_USAGE_SYNC
    Config key: pool.reset_error_count_on_usage_sync
    Default: True
    """
    return _get_bool("pool.reset_error_count_on_usage_sync", True, "RESET_ERROR_COUNT_ON_USAGE_SYNC")


def get_provider_pools_file() -> str:
    """
    Get provider pools file path (YAML or JSON).

    Environment variable: PROVIDER_POOLS_FILE
    Config key: pool.provider_pools_file
    Default: config/provider_pools.yaml
    """
    return str(get_config_value("pool.provider_pools_file", "config/provider_pools.yaml", "PROVIDER_POOLS_FILE"))


def get_provider_fallback_chain() -> Dict[str, List[str]]:
    """
    降级链 {provider_type: [fallback_provider, ...]}。

    Config key: provider_fallback_chain
    Default: {}
    """
    raw = get_config_value("provider_fallback_chain", {}) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError("provider_fallback_chain must be a mapping")
    chain: Dict[str, List[str]] = {}
    for primary, entries in raw.items():
        if isinstance(entries, str):
            entries = [e.strip() for e in entries.split(",") if e.strip()]
        chain[str(primary)] = [str(e) for e in (entries or [])]
    return chain


# ==================== 超时配置 ====================

def get_request_timeout() -> float:
    """
    非流式请求超时（秒）。

    Environment variable: REQUEST_TIMEOUT
    Config key: transport.request_timeout
    Default: 30
    """
    return _get_float("transport.request_timeout", 30.0, "REQUEST_TIMEOUT")


def get_stream_timeout() -> float:
    """
    流式请求中两个块之间的最长等待（秒）。

    Environment variable: STREAM_TIMEOUT
    Config key: transport.stream_timeout
    Default: 120
    """
    return _get_float("transport.stream_timeout", 120.0, "STREAM_TIMEOUT")


def get_tls_impersonate_enabled() -> bool:
    """
    是否启用 TLS 指纹伪装（curl_cffi）。

    Environment variable: TLS_IMPERSONATE_ENABLED
    Config key: transport.tls_impersonate_enabled
    Default: True
    """
    return _get_bool("transport.tls_impersonate_enabled", True, "TLS_IMPERSONATE_ENABLED")


def get_tls_impersonate_profile() -> str:
    """
    Environment variable: TLS_IMPERSONATE_PROFILE
    Config key: transport.tls_impersonate_profile
    Default: chrome131
    """
    return str(get_config_value("transport.tls_impersonate_profile", "chrome131", "TLS_IMPERSONATE_PROFILE"))


# ==================== 后台刷新配置 ====================

def get_background_refresh_enabled() -> bool:
    """
    Get background refresh enabled setting.

    启用后台用量同步 / token 刷新。

    Environment variable: BACKGROUND_REFRESH_ENABLED
    Config key: refresh.enabled
    Default: True
    """
    return _get_bool("refresh.enabled", True, "BACKGROUND_REFRESH_ENABLED")


def get_refresh_interval() -> float:
    """
    后台刷新周期（秒）。

    Environment variable: REFRESH_INTERVAL_SECONDS
    Config key: refresh.interval
    Default: 600
    """
    return _get_float("refresh.interval", 600.0, "REFRESH_INTERVAL_SECONDS")


def get_refresh_concurrency() -> int:
    """
    Environment variable: BACKGROUND_REFRESH_MAX_CONCURRENT
    Config key: refresh.concurrency
    Default: 5
    """
    return max(1, _get_int("refresh.concurrency", 5, "BACKGROUND_REFRESH_MAX_CONCURRENT"))


def get_refresh_jitter() -> float:
    """
    Environment variable: REFRESH_JITTER
    Config key: refresh.jitter
    Default: 0.15
    """
    return _get_float("refresh.jitter", 0.15, "REFRESH_JITTER")


# ==================== 路由配置 ====================

def normalize_model_providers(raw: Any) -> List[str]:
    """
    规范化 DEFAULT_MODEL_PROVIDERS

    逗号分隔或列表，大小写不敏感；未知的提供商类型记录警告并忽略。
    """
    if not raw:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    known = {p.lower(): p for p in PROVIDER_PROTOCOLS}
    providers: List[str] = []
    for item in items:
        name = str(item).strip()
        if not name:
            continue
        canonical = known.get(name.lower())
        if canonical is None:
            log.warning(f"Ignoring unknown provider type in model providers: {name}", tag="CONFIG")
            continue
        if canonical not in providers:
            providers.append(canonical)
    return providers


def get_model_providers() -> List[str]:
    """
    Environment variable: DEFAULT_MODEL_PROVIDERS (comma-separated)
    Config key: routing.model_providers
    Default: []
    """
    return normalize_model_providers(get_config_value("routing.model_providers", [], "DEFAULT_MODEL_PROVIDERS"))


def get_default_provider() -> Optional[str]:
    """
    没有任何路由规则命中时使用的提供商。

    Environment variable: DEFAULT_PROVIDER
    Config key: routing.default_provider
    Default: DEFAULT_MODEL_PROVIDERS 的第一项
    """
    value = get_config_value("routing.default_provider", None, "DEFAULT_PROVIDER")
    if value:
        return str(value)
    providers = get_model_providers()
    return providers[0] if providers else None


def get_model_routing() -> List[ModelRoutingRule]:
    """Config key: routing.models"""
    return load_model_routing(get_config_value("routing.models", {}))


def get_providers_config() -> Dict[str, Dict[str, Any]]:
    """各提供商客户端配置 {provider_type: {base_url, timeout, default_model, ...}}"""
    raw = get_config_value("providers", {}) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError("providers must be a mapping")
    return {str(k): dict(v or {}) for k, v in raw.items()}


# ==================== 诊断捕获 ====================

def get_capture_enabled() -> bool:
    """
    Environment variable: CAPTURE_ENABLED
    Config key: capture.enabled
    Default: False
    """
    return _get_bool("capture.enabled", False, "CAPTURE_ENABLED")


def get_capture_flush_delay() -> float:
    """
    Environment variable: CAPTURE_FLUSH_DELAY
    Config key: capture.flush_delay
    Default: 2.0
    """
    return _get_float("capture.flush_delay", 2.0, "CAPTURE_FLUSH_DELAY")


# ====================== 运行时设置 ======================

@dataclass(frozen=True)
class GatewaySettings:
    """运行时只读的网关配置"""

    host: str = "0.0.0.0"
    port: int = 7861
    api_password: str = ""

    credential_switch_max_retries: int = 5
    max_error_count: int = 10
    cron_near_minutes: float = 15
    reset_error_count_on_success: bool = True
    reset_error_count_on_usage_sync: bool = True
    provider_pools_file: str = "config/provider_pools.yaml"
    provider_fallback_chain: Dict[str, List[str]] = field(default_factory=dict)

    request_timeout: float = 30.0
    stream_timeout: float = 120.0
    tls_impersonate_enabled: bool = True
    tls_impersonate_profile: str = "chrome131"
    proxy: Optional[str] = None

    background_refresh_enabled: bool = True
    refresh_interval: float = 600.0
    refresh_concurrency: int = 5
    refresh_jitter: float = 0.15

    model_routing: List[ModelRoutingRule] = field(default_factory=list)
    model_providers: List[str] = field(default_factory=list)
    default_provider: Optional[str] = None
    providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    capture_enabled: bool = False
    capture_flush_delay: float = 2.0

    def pool_settings(self) -> PoolSettings:
        return PoolSettings(
            credential_switch_max_retries=self.credential_switch_max_retries,
            max_error_count=self.max_error_count,
            cron_near_minutes=self.cron_near_minutes,
            reset_error_count_on_success=self.reset_error_count_on_success,
            reset_error_count_on_usage_sync=self.reset_error_count_on_usage_sync,
        )

    def default_models(self) -> Dict[str, str]:
        """降级时各提供商使用的目标模型（providers.<type>.default_model）"""
        return {
            ptype: str(cfg["default_model"])
            for ptype, cfg in self.providers.items()
            if cfg.get("default_model")
        }


def validate_fallback_chain(chain: Dict[str, List[str]], known: Optional[List[str]] = None) -> None:
    """
    启动时校验降级链

    Raises:
        ConfigurationError: 降级链引用了未知的提供商类型
    """
    known_types = set(known if known is not None else PROVIDER_PROTOCOLS)
    for primary, entries in chain.items():
        for name in [primary, *entries]:
            if name not in known_types:
                raise ConfigurationError(
                    f"provider_fallback_chain references unknown provider type '{name}'",
                    provider_type=name,
                )


def load_settings(path: Optional[str] = None) -> GatewaySettings:
    """从环境变量与配置文件构建 GatewaySettings"""
    if path is not None:
        reload_config(path)
    else:
        init_config()

    chain = get_provider_fallback_chain()
    validate_fallback_chain(chain)

    settings = GatewaySettings(
        host=get_server_host(),
        port=get_server_port(),
        api_password=get_api_password(),
        credential_switch_max_retries=get_credential_switch_max_retries(),
        max_error_count=get_max_error_count(),
        cron_near_minutes=get_cron_near_minutes(),
        reset_error_count_on_success=get_reset_error_count_on_success(),
        reset_error_count_on_usage_sync=get_reset_error_count_on_usage_sync(),
        provider_pools_file=get_provider_pools_file(),
        provider_fallback_chain=chain,
        request_timeout=get_request_timeout(),
        stream_timeout=get_stream_timeout(),
        tls_impersonate_enabled=get_tls_impersonate_enabled(),
        tls_impersonate_profile=get_tls_impersonate_profile(),
        proxy=get_proxy_config(),
        background_refresh_enabled=get_background_refresh_enabled(),
        refresh_interval=get_refresh_interval(),
        refresh_concurrency=get_refresh_concurrency(),
        refresh_jitter=get_refresh_jitter(),
        model_routing=get_model_routing(),
        model_providers=get_model_providers(),
        default_provider=get_default_provider(),
        providers=get_providers_config(),
        capture_enabled=get_capture_enabled(),
        capture_flush_delay=get_capture_flush_delay(),
    )
    log.debug(
        f"Settings loaded: default_provider={settings.default_provider}, "
        f"fallback_chain={settings.provider_fallback_chain}",
        tag="CONFIG",
    )
    return settings

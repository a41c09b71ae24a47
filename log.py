"""
日志模块 - 彩色控制台输出 + 结构化日志

颜色方案：
- DEBUG:    灰色 (dim) - 调试信息
- INFO:     白色 - 一般信息
- ROUTE:    青色 (cyan) - 路由 / 凭证选择
- FALLBACK: 黄色 (yellow) - 凭证切换与跨提供商降级
- SUCCESS:  绿色 (green) - 成功操作
- WARNING:  橙色 - 警告
- ERROR:    红色 - 错误
- CRITICAL: 红色加粗 - 严重错误

环境变量：
- LOG_LEVEL=debug|info|...   日志级别（默认 info）
- LOG_FORMAT=json|text       控制台输出格式（默认 text）
- LOG_FILE=path              可选的文件输出（默认不写文件）
"""

import contextvars
import json
import os
import sys
import threading
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI 颜色代码"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    WHITE = "\033[37m"
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_CYAN = "\033[96m"
    BRIGHT_MAGENTA = "\033[95m"


def _supports_color() -> bool:
    """检测终端是否支持颜色"""
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled = _supports_color()

LOG_LEVELS = {
    "debug": 0,
    "info": 1,
    "route": 1,
    "success": 1,
    "fallback": 2,
    "warning": 3,
    "error": 4,
    "critical": 5,
}

LOG_STYLES = {
    "debug":    (Colors.DIM + Colors.WHITE, "DEBUG"),
    "info":     (Colors.WHITE, "INFO"),
    "route":    (Colors.BRIGHT_CYAN, "ROUTE"),
    "success":  (Colors.BRIGHT_GREEN, "SUCCESS"),
    "fallback": (Colors.BRIGHT_YELLOW, "FALLBACK"),
    "warning":  (Colors.YELLOW + Colors.BOLD, "WARNING"),
    "error":    (Colors.RED, "ERROR"),
    "critical": (Colors.BRIGHT_RED + Colors.BOLD, "CRITICAL"),
}

_file_lock = threading.Lock()
_file_writing_disabled = False

# 请求上下文：asyncio 任务间隔离的 request_id
_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "relay2api_request_id", default=None
)


def set_request_id(request_id: str) -> contextvars.Token:
    """设置当前任务的 request_id（用于日志追踪）"""
    return _request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    """获取当前任务的 request_id"""
    return _request_id_var.get()


def clear_request_id(token: Optional[contextvars.Token] = None) -> None:
    """清除当前任务的 request_id"""
    if token is not None:
        _request_id_var.reset(token)
    else:
        _request_id_var.set(None)


def _get_current_log_level() -> int:
    level = os.getenv("LOG_LEVEL", "info").lower()
    return LOG_LEVELS.get(level, LOG_LEVELS["info"])


def _structured_enabled() -> bool:
    return os.getenv("LOG_FORMAT", "text").lower() == "json"


def _write_to_file(message: str) -> None:
    global _file_writing_disabled
    log_file = os.getenv("LOG_FILE")
    if not log_file or _file_writing_disabled:
        return
    try:
        with _file_lock:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(message + "\n")
    except OSError as e:
        _file_writing_disabled = True
        print(f"Warning: Disabling log file writing: {e}", file=sys.stderr)


def _colorize(text: str, color: str) -> str:
    if not _color_enabled:
        return text
    return f"{color}{text}{Colors.RESET}"


def _log(level: str, message: str, tag: Optional[str] = None, **extra: Any) -> None:
    """
    核心日志函数

    Args:
        level: 日志级别
        message: 日志消息
        tag: 可选标签（如 POOL / ROUTER / CONVERTER）
        **extra: 额外的结构化字段（provider_type, credential, ...）
    """
    level = level.lower()
    if level not in LOG_LEVELS:
        print(f"Warning: Unknown log level '{level}'", file=sys.stderr)
        return

    if LOG_LEVELS[level] < _get_current_log_level():
        return

    color, label = LOG_STYLES[level]
    now = datetime.now()
    timestamp = now.strftime("%H:%M:%S")

    request_id = get_request_id()
    if request_id and "request_id" not in extra:
        extra["request_id"] = request_id

    if _structured_enabled():
        entry: Dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": label,
            "message": message,
        }
        if tag:
            entry["tag"] = tag
        entry.update(extra)
        output = json.dumps(entry, ensure_ascii=False, default=str)
        plain_entry = output
    else:
        tag_part = f" [{tag}]" if tag else ""
        extra_part = ""
        if extra:
            extra_part = " | " + " ".join(f"{k}={v}" for k, v in extra.items())
        plain_entry = f"[{timestamp}] [{label}]{tag_part} {message}{extra_part}"
        if _color_enabled:
            output = (
                f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
                f"{_colorize(f'[{label}]', color)}"
                f"{' ' + _colorize(f'[{tag}]', Colors.BRIGHT_MAGENTA) if tag else ''} "
                f"{message}"
                f"{Colors.DIM}{extra_part}{Colors.RESET if extra_part else ''}"
            )
        else:
            output = plain_entry

    stream = sys.stderr if level in ("error", "critical") else sys.stdout
    print(output, file=stream)

    _write_to_file(plain_entry)


class Logger:
    """支持多种调用方式的日志器"""

    def __call__(self, level: str, message: str, tag: Optional[str] = None, **extra):
        _log(level, message, tag, **extra)

    def debug(self, message: str, tag: Optional[str] = None, **extra):
        _log("debug", message, tag, **extra)

    def info(self, message: str, tag: Optional[str] = None, **extra):
        _log("info", message, tag, **extra)

    def route(self, message: str, tag: Optional[str] = None, **extra):
        _log("route", message, tag, **extra)

    def success(self, message: str, tag: Optional[str] = None, **extra):
        _log("success", message, tag, **extra)

    def fallback(self, message: str, tag: Optional[str] = None, **extra):
        _log("fallback", message, tag, **extra)

    def warning(self, message: str, tag: Optional[str] = None, **extra):
        _log("warning", message, tag, **extra)

    def error(self, message: str, tag: Optional[str] = None, **extra):
        _log("error", message, tag, **extra)

    def critical(self, message: str, tag: Optional[str] = None, **extra):
        _log("critical", message, tag, **extra)

    def get_current_level(self) -> str:
        current_level = _get_current_log_level()
        for name, value in LOG_LEVELS.items():
            if value == current_level:
                return name
        return "info"

    def is_color_enabled(self) -> bool:
        return _color_enabled

    def set_color_enabled(self, enabled: bool) -> None:
        global _color_enabled
        _color_enabled = enabled


log = Logger()

__all__ = [
    "log",
    "LOG_LEVELS",
    "Colors",
    "set_request_id",
    "get_request_id",
    "clear_request_id",
]

"""
降级路由器 - 单个逻辑请求的分派

流程（非流式与流式相同）：
1. 由路由配置确定提供商类型（显式 provider / 模型路由规则 / 默认提供商）
2. 获取凭证 → canonical 请求转换为该提供商的 native 请求 → 提供商客户端发送
3. 成功 → 记录成功并释放
4. AuthError / TransportError（含超时）→ 记录失败（认证失败直接禁用），
   换下一个凭证，最多 credential_switch_max_retries 次
5. 该提供商耗尽且配置了降级链 → 依次尝试链上的提供商；每个提供商每次请求只访问一次
6. 全部耗尽 → PoolExhaustedError(last_error, attempted_providers, fallback_attempted)

ProtocolError 从不重试。流式请求在第一个块转发之后出错时，
输出一个 error 终止块，不会重新开始。调用方取消时释放凭证且不计失败。
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from log import log

from ..capture import FALLBACK, POOL_EXHAUSTED, DiagnosticCapture, safe_notify
from ..config_loader import ModelRoutingRule, match_model_route
from ..converters.registry import ConverterRegistry, protocol_for_provider
from ..errors import (
    AuthError,
    ConfigurationError,
    PoolExhaustedError,
    ProtocolError,
    RelayError,
    TransportError,
)
from ..models import (
    CanonicalChunk,
    CanonicalRequest,
    CanonicalResponse,
    ChunkKind,
    ConversionContext,
    StreamPhase,
)
from .credential import CredentialRecord
from .manager import PoolManager

__all__ = ["FallbackRouter", "DispatchResult", "RouteDecision"]

RETRYABLE_ERRORS = (AuthError, TransportError)


@dataclass(frozen=True)
class RouteDecision:
    provider_type: str
    model: str


@dataclass
class DispatchResult:
    response: CanonicalResponse
    provider_type: str
    credential_uuid: str
    attempted_providers: List[str] = field(default_factory=list)


@dataclass
class _Attempt:
    """一次逻辑请求的重试簿记"""
    attempted: List[str] = field(default_factory=list)
    last_error: Optional[RelayError] = None
    fallback_attempted: bool = False


class FallbackRouter:
    """
    凭证切换 + 降级链分派

    Args:
        manager: 凭证池管理器
        clients: {provider_type: ProviderClient}，或按提供商类型返回客户端的函数
        registry: 转换器注册中心
        fallback_chain: {provider_type: [降级提供商, ...]}
        routing_rules: 模型路由规则
        default_provider: 没有任何规则命中时使用的提供商
        default_models: {provider_type: 模型}，降级到该提供商时改写的目标模型
        request_timeout / stream_timeout: 单次上游调用 / 单个流式块的超时（秒）
        capture: 可选的诊断捕获
    """

    def __init__(
        self,
        manager: PoolManager,
        clients: Any,
        *,
        registry: Optional[ConverterRegistry] = None,
        fallback_chain: Optional[Dict[str, Sequence[str]]] = None,
        routing_rules: Optional[List[ModelRoutingRule]] = None,
        default_provider: Optional[str] = None,
        default_models: Optional[Dict[str, str]] = None,
        request_timeout: float = 30.0,
        stream_timeout: float = 120.0,
        capture: Optional[DiagnosticCapture] = None,
    ):
        self.manager = manager
        self._clients = clients
        self.registry = registry or ConverterRegistry.get_instance()
        self.fallback_chain = {k: list(v) for k, v in (fallback_chain or {}).items()}
        self.routing_rules = list(routing_rules or [])
        self.default_provider = default_provider
        self.default_models = dict(default_models or {})
        self.request_timeout = request_timeout
        self.stream_timeout = stream_timeout
        self.capture = capture

    # ------------------------------------------------------------------
    # 路由
    # ------------------------------------------------------------------

    def get_client(self, provider_type: str):
        if callable(self._clients) and not isinstance(self._clients, dict):
            return self._clients(provider_type)
        return self._clients.get(provider_type)

    def resolve(self, model: str, provider_type: Optional[str] = None) -> RouteDecision:
        """
        确定首选提供商类型

        显式 provider > 模型路由规则 > 默认提供商

        Raises:
            ConfigurationError: 无法确定提供商
        """
        if provider_type:
            try:
                protocol_for_provider(provider_type)
            except ConfigurationError as e:
                raise ConfigurationError(f"Unknown provider '{provider_type}'", status_code=400) from e
            return RouteDecision(provider_type, model)
        rule = match_model_route(self.routing_rules, model)
        if rule is not None:
            return RouteDecision(rule.provider, rule.model or model)
        if self.default_provider:
            return RouteDecision(self.default_provider, model)
        raise ConfigurationError(f"No provider configured for model '{model}'", status_code=400)

    def provider_chain(self, primary: str) -> List[str]:
        """首选提供商 + 降级链，去重（每个提供商只访问一次）"""
        chain: List[str] = []
        for provider_type in [primary, *self.fallback_chain.get(primary, [])]:
            if provider_type not in chain:
                chain.append(provider_type)
        return chain

    @property
    def max_attempts(self) -> int:
        return max(1, self.manager.settings.credential_switch_max_retries)

    def _candidates(self, request: CanonicalRequest, provider_type: Optional[str],
                    attempt: _Attempt):
        """依次产出 (provider_type, client, converter, 请求)"""
        decision = self.resolve(request.model, provider_type)
        chain = self.provider_chain(decision.provider_type)
        for idx, ptype in enumerate(chain):
            if idx > 0:
                attempt.fallback_attempted = True
                log.fallback(f"Falling back {chain[idx - 1]} -> {ptype} for model {request.model}", tag="ROUTER")
                safe_notify(self.manager.observer, FALLBACK, {
                    "from": chain[idx - 1], "to": ptype, "model": request.model,
                })
            attempt.attempted.append(ptype)
            client = self.get_client(ptype)
            if client is None or not self.manager.has_provider(ptype):
                log.warning(f"Provider '{ptype}' has no client or pool, skipping", tag="ROUTER")
                continue
            converter = self.registry.for_provider(ptype)
            target = request
            if idx == 0 and decision.model != request.model:
                target = _with_model(request, decision.model)
            elif idx > 0 and self.default_models.get(ptype):
                target = _with_model(request, self.default_models[ptype])
            yield ptype, client, converter, target

    def _exhausted(self, request: CanonicalRequest, attempt: _Attempt) -> PoolExhaustedError:
        log.error(
            f"All credentials exhausted for model {request.model} "
            f"(providers={attempt.attempted}, last_error={attempt.last_error!r})",
            tag="ROUTER",
        )
        safe_notify(self.manager.observer, POOL_EXHAUSTED, {
            "model": request.model,
            "attempted_providers": list(attempt.attempted),
            "fallback_attempted": attempt.fallback_attempted,
        })
        return PoolExhaustedError(
            f"All credentials exhausted (tried: {', '.join(attempt.attempted) or 'none'})",
            last_error=attempt.last_error,
            attempted_providers=attempt.attempted,
            fallback_attempted=attempt.fallback_attempted,
        )

    def _record_failure(self, ptype: str, record: CredentialRecord, error: RelayError,
                        attempt: _Attempt) -> None:
        if error.provider_type is None:
            error.provider_type = ptype
        if error.credential_uuid is None:
            error.credential_uuid = record.uuid
        attempt.last_error = error
        outcome = self.manager.report_failure(record, error)
        log.warning(
            f"{ptype}/{record.display_name} failed ({type(error).__name__}, "
            f"error_count={outcome.error_count}): {error.message[:200]}",
            tag="ROUTER",
        )

    # ------------------------------------------------------------------
    # 非流式
    # ------------------------------------------------------------------

    async def dispatch(self, request: CanonicalRequest, provider_type: Optional[str] = None,
                       ctx: Optional[ConversionContext] = None) -> DispatchResult:
        """
        非流式分派

        Raises:
            ProtocolError: 上游响应不符合预期（不重试）
            PoolExhaustedError: 凭证与降级链都已耗尽
        """
        attempt = _Attempt()
        for ptype, client, converter, target in self._candidates(request, provider_type, attempt):
            native_request = converter.from_canonical_request(target)
            if self.capture is not None and ctx is not None:
                self.capture.capture_request(ctx, None, native_request)
            exclude: set = set()
            for _ in range(self.max_attempts):
                record = self.manager.try_acquire(ptype, exclude)
                if record is None:
                    break
                exclude.add(record.uuid)
                log.route(f"{ptype}/{record.display_name} -> {target.model}", tag="ROUTER")
                try:
                    native = await asyncio.wait_for(
                        client.send(native_request, record, stream=False),
                        timeout=self.request_timeout,
                    )
                    response = converter.to_canonical_response(native)
                except asyncio.TimeoutError:
                    self._record_failure(ptype, record, TransportError(
                        f"{ptype} request timed out after {self.request_timeout}s", is_timeout=True,
                    ), attempt)
                    continue
                except RETRYABLE_ERRORS as e:
                    self._record_failure(ptype, record, e, attempt)
                    continue
                except ProtocolError as e:
                    if e.provider_type is None:
                        e.provider_type = ptype
                    log.error(f"{ptype} protocol error, not retrying: {e.message[:200]}", tag="ROUTER")
                    raise
                finally:
                    self.manager.release(record)

                self.manager.report_success(record)
                if not response.model:
                    response.model = target.model
                if self.capture is not None and ctx is not None:
                    self.capture.capture_response(ctx, native=native)
                log.success(f"{ptype}/{record.display_name} served {target.model}", tag="ROUTER")
                return DispatchResult(response, ptype, record.uuid, list(attempt.attempted))

        raise self._exhausted(request, attempt)

    # ------------------------------------------------------------------
    # 流式
    # ------------------------------------------------------------------

    async def _next_native(self, iterator: AsyncIterator[Dict[str, Any]]) -> Tuple[bool, Any]:
        try:
            chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.stream_timeout)
        except StopAsyncIteration:
            return False, None
        except asyncio.TimeoutError as e:
            raise TransportError(f"Stream stalled for {self.stream_timeout}s", is_timeout=True) from e
        return True, chunk

    async def dispatch_stream(self, request: CanonicalRequest, provider_type: Optional[str] = None,
                              ctx: Optional[ConversionContext] = None) -> AsyncIterator[CanonicalChunk]:
        """
        流式分派，产出 canonical 块

        第一个块产出之前的错误按非流式规则切换凭证 / 降级；
        之后的错误变成唯一的 error 终止块。
        """
        attempt = _Attempt()
        for ptype, client, converter, target in self._candidates(request, provider_type, attempt):
            native_request = converter.from_canonical_request(target)
            if self.capture is not None and ctx is not None:
                self.capture.capture_request(ctx, None, native_request)
            exclude: set = set()
            for _ in range(self.max_attempts):
                record = self.manager.try_acquire(ptype, exclude)
                if record is None:
                    break
                exclude.add(record.uuid)
                log.route(f"{ptype}/{record.display_name} -> {target.model} (stream)", tag="ROUTER")
                state = converter.new_stream_state(ctx)
                state.model = target.model
                emitted = False
                iterator = None
                try:
                    iterator = await asyncio.wait_for(
                        client.send(native_request, record, stream=True),
                        timeout=self.request_timeout,
                    )
                    while not state.terminal_emitted:
                        has_more, native = await self._next_native(iterator)
                        if has_more:
                            if self.capture is not None and ctx is not None:
                                self.capture.capture_chunk(ctx, native=native)
                            chunks = converter.next_canonical_chunks(native, state)
                        else:
                            chunks = converter.finish_stream(state)
                        for chunk in chunks:
                            if chunk.kind is ChunkKind.ERROR and isinstance(chunk.error, RETRYABLE_ERRORS):
                                # 计入凭证失败；还没转发任何内容时会切换凭证
                                raise chunk.error
                            emitted = True
                            yield chunk
                        if not has_more:
                            break
                except asyncio.TimeoutError:
                    error = TransportError(f"{ptype} stream open timed out", is_timeout=True)
                    self._record_failure(ptype, record, error, attempt)
                    if emitted:
                        yield self._stream_failure(state, error)
                        return
                    continue
                except RETRYABLE_ERRORS as e:
                    self._record_failure(ptype, record, e, attempt)
                    if emitted:
                        yield self._stream_failure(state, e)
                        return
                    continue
                except ProtocolError as e:
                    if e.provider_type is None:
                        e.provider_type = ptype
                    log.error(f"{ptype} stream protocol error, not retrying: {e.message[:200]}", tag="ROUTER")
                    if emitted:
                        yield self._stream_failure(state, e)
                        return
                    raise
                except (asyncio.CancelledError, GeneratorExit):
                    log.info(f"Stream cancelled by caller, releasing {ptype}/{record.display_name}", tag="ROUTER")
                    raise
                finally:
                    if iterator is not None and hasattr(iterator, "aclose"):
                        await _close_quietly(iterator)
                    self.manager.release(record)

                if state.phase is StreamPhase.ERRORED:
                    # 上游在流内报告了不可重试的错误：不算成功，也不惩罚凭证
                    log.warning(f"{ptype}/{record.display_name} stream ended with an upstream error", tag="ROUTER")
                    return
                self.manager.report_success(record)
                log.success(f"{ptype}/{record.display_name} streamed {target.model}", tag="ROUTER")
                return

        raise self._exhausted(request, attempt)

    @staticmethod
    def _stream_failure(state, error: RelayError) -> CanonicalChunk:
        state.mark_errored()
        return CanonicalChunk.failure(error)

    def status(self) -> Dict[str, Any]:
        return {
            "default_provider": self.default_provider,
            "fallback_chain": self.fallback_chain,
            "routing_rules": [repr(r) for r in self.routing_rules],
        }


def _with_model(request: CanonicalRequest, model: str) -> CanonicalRequest:
    return replace(request, model=model)


async def _close_quietly(iterator) -> None:
    try:
        await iterator.aclose()
    except RuntimeError as e:
        # 生成器仍在运行（被取消的 __anext__）
        log.debug(f"Upstream iterator close skipped: {e}", tag="ROUTER")
    except Exception as e:
        log.warning(f"Upstream iterator close failed: {e}", tag="ROUTER")

"""
relay2api - 多协议 LLM 网关

客户端以 OpenAI / OpenAI Responses / Claude / Gemini 任一协议接入，
请求被转换后分发到 Claude / Gemini / Grok / Kiro / OpenAI 等后端凭证池。
"""

__version__ = "0.3.0"

"""Chat Core 顶层包。

该包提供多 Provider 对话服务的核心实现，
包括配置加载、领域模型、Provider 适配、限流与流式解析、
会话管理、事件通知与持久化存储等能力。
"""

from chat_core.api.service import AIService, build_default_service

__all__ = ["AIService", "build_default_service"]

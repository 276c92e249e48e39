"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / RequestOptions / ChatResult 模型。
- conversation: 会话与消息模型及内存版 ConversationStore。
- storage: 外部键值存储协议 KeyValueStore。
- exceptions: 业务异常类型定义。
"""

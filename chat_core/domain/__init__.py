"""领域层模型与协议。

包含：
- models: Message / StreamFrame 模型。
- conversation: 有序消息日志 ConversationStore 及 BlobStore 持久化协议。
- exceptions: 业务异常类型定义。
"""

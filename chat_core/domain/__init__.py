"""领域层模型与协议。

包含：
- models: ChatMessage / Attachment / Conversation 以及流式记录 StreamRecord。
- conversation: 会话持久化协议 ConversationRepository。
- exceptions: 业务异常类型定义。
"""

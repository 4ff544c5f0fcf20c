"""领域层模型与协议。

包含：
- models: ChatMessage / ChatRequest / ConversationMessage / ProtocolFrame 等模型。
- patches: 时间线消息补丁（NewMessage、ContentDelta 等）。
- exceptions: 业务异常类型定义。
"""

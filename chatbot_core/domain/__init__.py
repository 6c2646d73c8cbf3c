"""领域层模型与协议。

包含：
- models: Provider 共享的 ChatMessage / ChatResult / StreamEvent 模型。
- conversation: 会话与消息实体及 ChatStore 抽象。
- ai_model: AIModel 配置实体及 ModelStore 抽象。
- usage: UsageRecord 审计实体及 UsageStore 抽象。
- exceptions: 业务异常类型定义。
"""

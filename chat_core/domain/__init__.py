"""领域层模型与协议。

包含：
- models: ChatMessage / ExchangeRequest / ExchangeResult 等交换模型。
- conversation: 会话与消息的存储模型、ThreadStore 抽象与标题生成规则。
- exceptions: 业务异常类型与对外错误文案。
"""

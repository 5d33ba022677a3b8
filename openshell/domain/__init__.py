"""领域层模型与协议。

包含：
- models: ChatMessage / ChatSession / StreamEvent / ProcessResult 等模型。
- exceptions: 业务异常类型定义。
"""

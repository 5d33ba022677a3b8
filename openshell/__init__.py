"""OpenShell 顶层包。

该包把聊天平台的会话桥接到本地长时间运行、以 JSONL 流式输出的
CLI 子进程（codex、claude），包括子进程执行器、Provider 协议适配、
会话存储、单会话串行编排与流式输出节流。
"""

__version__ = "0.1.0"

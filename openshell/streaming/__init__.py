"""流式输出节流与文本裁剪工具。"""

from openshell.streaming.stream_edit import StreamEditController, truncate_for_platform

__all__ = ["StreamEditController", "truncate_for_platform"]

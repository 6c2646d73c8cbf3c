"""Server-Sent Events 行解析。

厂商的流式接口都是逐行读取：空行和以 ":" 开头的注释行跳过，
"event:" 行记录事件名，"data:" 行产出一条 (event, data)。
"""

from typing import Iterable, Iterator, Optional, Tuple


def iter_sse_data(lines: Iterable[str]) -> Iterator[Tuple[Optional[str], str]]:
    event: Optional[str] = None
    for raw in lines:
        line = (raw or "").strip()
        if not line:
            # 空行表示上一条事件结束
            event = None
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
            continue
        if line.startswith("data:"):
            yield event, line[5:].strip()
        # id:/retry: 等字段不关心

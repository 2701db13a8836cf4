"""事件循环协作让出的辅助工具。"""

from __future__ import annotations

import asyncio

DEFAULT_YIELD_EVERY = 500


async def checkpoint(iteration: int, every: int = DEFAULT_YIELD_EVERY) -> None:
    """
    功能说明:
        每处理 `every` 次迭代让出一次事件循环，避免长循环饿死缓存保活、超时计时器等并发任务。
    参数:
        iteration (int): 从 1 开始的已处理条数。
        every (int): 让出间隔，小于 1 时不让出。
    """
    if every > 0 and iteration % every == 0:
        await asyncio.sleep(0)

"""后台任务注册表

- KeyedDebouncer: 按 key 防抖，重复调度会取消上一次尚未触发的定时器
- spawn_background: 发起不等待的后台协程，异常交给 observability 收集
- KeyedLock: 按 key 串行化同一资源上的协程，无人持有时释放该 key 的锁
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Set

from app.core.observability import capture_exception

logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task] = set()


def _on_task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        capture_exception(exc, task=task.get_name())


def spawn_background(coro: Awaitable, name: str) -> asyncio.Task:
    """在当前事件循环上启动后台任务；调用方不等待结果"""
    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


async def drain_background(timeout: float = 10.0) -> None:
    """等待所有后台任务结束（关闭流程与测试使用）"""
    while _background_tasks:
        pending = list(_background_tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} background tasks still running after {timeout}s")
            return


def background_count() -> int:
    return len(_background_tasks)


class KeyedDebouncer:
    """按 key 的防抖调度器

    状态: scheduled -> fired，或在重新调度时 cancelled。
    定时器挂在调度时的事件循环上，关闭时需调用 cancel_all()。
    """

    def __init__(self, name: str):
        self.name = name
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, delay_seconds: float, factory: Callable[[], Awaitable]) -> None:
        loop = asyncio.get_running_loop()
        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.cancel()

        def _fire() -> None:
            self._handles.pop(key, None)
            spawn_background(factory(), name=f"{self.name}:{key}")

        self._handles[key] = loop.call_later(delay_seconds, _fire)

    def pending(self, key: str) -> bool:
        return key in self._handles

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        count = len(self._handles)
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if count:
            logger.info(f"{self.name}: cancelled {count} pending timers")
        return count


class KeyedLock:
    """按 key 的互斥锁；同一 key 的持有者按到达顺序依次执行"""

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

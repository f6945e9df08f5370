"""
实时日志流
为单个观察者提供有序、无重复、无缺口的构建事件流：
先订阅通道，再读取已有日志快照并回放，最后按行号截断后转发实时事件
"""

import json
import logging
import queue

from app import db
from app.services.log_channel import LogEvent, EVENT_LOG, EVENT_STATUS, EVENT_DONE, done_payload
from app.services.log_store import LogStore

logger = logging.getLogger(__name__)

EVENT_KEEPALIVE = 'keepalive'


class LiveStream:
    """单个观察者的实时日志流"""

    def __init__(self, build_id, manager, after_seq=0, keepalive=None):
        """
        Args:
            build_id: 构建ID
            manager: BuildManager
            after_seq: 断线重连时已收到的最后行号，只输出之后的行
            keepalive: 无事件时输出保活事件的间隔秒数，None 表示不输出
        """
        self.build_id = build_id
        self.manager = manager
        self.after_seq = after_seq or 0
        self.keepalive = keepalive

    def events(self):
        """事件生成器，以 done 事件结束；生成器关闭即视为观察者断开"""
        build = LogStore.get_build(self.build_id)
        if build is None:
            return

        if build.is_finished:
            yield from self._replay_finished(build)
            return

        channel = self.manager.channels.get(self.build_id)
        subscription = channel.subscribe()
        finished = False
        try:
            # 订阅之后再读取快照，快照与实时事件之间没有缺口
            snapshot = self.manager.snapshot(self.build_id)
            build = LogStore.get_build(self.build_id)

            if build.is_finished:
                finished = True
                yield from self._replay_finished(build)
                return

            status = build.status
            # 阻塞等待前释放数据库连接
            db.session.close()

            cutoff = len(snapshot)
            for seq, line in enumerate(snapshot, 1):
                if seq > self.after_seq:
                    yield LogEvent(EVENT_LOG, line, seq)
            yield LogEvent(EVENT_STATUS, status)

            while True:
                try:
                    event = subscription.get(timeout=self.keepalive)
                except queue.Empty:
                    yield LogEvent(EVENT_KEEPALIVE, None)
                    continue

                if event is None:
                    # 通道已被释放
                    break
                if event.type == EVENT_LOG and (event.seq <= cutoff or event.seq <= self.after_seq):
                    continue
                if event.type == EVENT_STATUS:
                    # 快照之后才处理到的状态变更可能已经通过快照输出过
                    if event.data == status:
                        continue
                    status = event.data
                yield event
                if event.type == EVENT_DONE:
                    break
        finally:
            channel.unsubscribe(subscription)
            if finished:
                self.manager.channels.discard_if_unused(self.build_id)
            logger.debug(f"观察者已断开: build_id={self.build_id}")

    def _replay_finished(self, build):
        """已结束的构建：回放全部持久化日志、最终状态和 done"""
        lines = LogStore.get_log_lines(self.build_id)
        for seq, line in enumerate(lines, 1):
            if seq > self.after_seq:
                yield LogEvent(EVENT_LOG, line, seq)
        yield LogEvent(EVENT_STATUS, build.status)
        yield LogEvent(EVENT_DONE, done_payload(build.status, build.exit_code, build.error_message))


def format_sse(event: LogEvent) -> str:
    """格式化为 text/event-stream 记录，log 事件带行号作为事件ID"""
    if event.type == EVENT_KEEPALIVE:
        return ': keep-alive\n\n'
    payload = json.dumps(event.to_dict(), ensure_ascii=False)
    if event.seq is not None:
        return f"id: {event.seq}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"

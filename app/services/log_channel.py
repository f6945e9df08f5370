"""
构建日志通道
每个构建一个内存广播中心，把日志行和状态事件推送给当前所有订阅者
"""

import logging
import queue
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

EVENT_LOG = 'log'
EVENT_STATUS = 'status'
EVENT_DONE = 'done'


class LogEvent:
    """通道事件，log 事件的 seq 为构建内累计行号"""

    __slots__ = ('type', 'data', 'seq')

    def __init__(self, type, data, seq=None):
        self.type = type
        self.data = data
        self.seq = seq

    def to_dict(self):
        return {'type': self.type, 'data': self.data}

    def __repr__(self):
        return f'<LogEvent {self.type} seq={self.seq}>'


def done_payload(status, exit_code=None, error=None):
    """done 事件数据：始终包含 status 和 exitCode"""
    payload = {'status': status, 'exitCode': exit_code}
    if error:
        payload['error'] = error
    return payload


class Subscription:
    """单个订阅者，事件在队列中等待消费"""

    def __init__(self, channel):
        self.channel = channel
        self._queue = queue.Queue()
        self.closed = False

    def put(self, event):
        self._queue.put(event)

    def get(self, timeout=None) -> Optional[LogEvent]:
        """取下一个事件，超时抛出 queue.Empty；通道关闭后返回 None"""
        return self._queue.get(timeout=timeout)

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put(None)


class LogChannel:
    """单个构建的广播中心"""

    def __init__(self, build_id):
        self.build_id = build_id
        self._lock = threading.Lock()
        self._subscribers = []
        self.closed = False

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            if self.closed:
                subscription.close()
            else:
                self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event: LogEvent):
        """推送给当前已订阅的所有订阅者，之后订阅的不会收到"""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(event)

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def close(self):
        """强制断开剩余订阅者"""
        with self._lock:
            self.closed = True
            subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription.close()


class ChannelRegistry:
    """构建ID -> 日志通道"""

    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[str, LogChannel] = {}
        self._timers: Dict[str, threading.Timer] = {}

    def get(self, build_id) -> LogChannel:
        """获取通道，不存在时创建"""
        with self._lock:
            channel = self._channels.get(build_id)
            if channel is None:
                channel = LogChannel(build_id)
                self._channels[build_id] = channel
            return channel

    def find(self, build_id) -> Optional[LogChannel]:
        with self._lock:
            return self._channels.get(build_id)

    def schedule_disposal(self, build_id, grace_period):
        """宽限期后释放通道，给慢速读取者留出时间"""
        timer = threading.Timer(grace_period, self.dispose, args=(build_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(build_id, None)
            self._timers[build_id] = timer
        if previous:
            previous.cancel()
        timer.start()

    def dispose(self, build_id):
        with self._lock:
            channel = self._channels.pop(build_id, None)
            self._timers.pop(build_id, None)
        if channel:
            channel.close()
            logger.info(f"日志通道已释放: build_id={build_id}")

    def discard_if_unused(self, build_id):
        """移除没有订阅者且未安排释放的通道（构建已结束后被重新创建的通道）"""
        with self._lock:
            channel = self._channels.get(build_id)
            if channel is None or build_id in self._timers or channel.subscriber_count:
                return
            del self._channels[build_id]
        channel.close()

    def shutdown(self):
        with self._lock:
            timers = list(self._timers.values())
            build_ids = list(self._channels.keys())
        for timer in timers:
            timer.cancel()
        for build_id in build_ids:
            self.dispose(build_id)

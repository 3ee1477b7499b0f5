import time

import concurrent.futures
from threading import Thread, Lock, Event, current_thread
import zmq
from zmq import Poller, Context

from .manager import TopicMessage, Subscriber as AsyncSubscriber, \
    Publisher as AsyncPublisher, SubscriberNode as AsyncSubscriberNode, \
    VaultMessageError


class VaultThreadDeadLock(Exception): pass


class StoppableThread(Thread):
    def __init__(self, *args, **kwargs):
        self.stop_event = Event()
        super().__init__(*args, **kwargs)

    def is_stopped(self):
        return self.stop_event.is_set()

    def stop(self):
        self.stop_event.set()
        self.join(timeout=1)


class Subscriber(AsyncSubscriber):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lock = Lock()
        self.context = Context.instance()

    def _acquire(self, timeout=10):
        if not self.lock.acquire(timeout=timeout):
            raise VaultThreadDeadLock()

    def add_filter(self, sub_filter: str):
        self._acquire()
        try:
            super().add_filter(sub_filter)
        finally:
            self.lock.release()

    def remove_filter(self, sub_filter: str):
        self._acquire()
        try:
            super().remove_filter(sub_filter)
        finally:
            self.lock.release()

    def receive_data(self, raw_socket=None, timeout=3) -> TopicMessage:
        if not raw_socket:
            raw_socket = self.raw_socket
        self._acquire(timeout)
        try:
            raw_data = raw_socket.recv_multipart()
        finally:
            self.lock.release()
        self.logger.debug(f"Received (subscriber {self.name}): {raw_data}")
        message = TopicMessage(self, raw_socket=raw_socket)
        message.parse(raw_data)
        return message


class Publisher(AsyncPublisher):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lock = Lock()
        self.context = Context.instance()

    def publish(self, topic: str, payload=None):
        message = self._create_message(topic, payload)
        raw_msg = message.format_message()
        if not self.lock.acquire(timeout=10):
            raise VaultThreadDeadLock()
        try:
            message.raw_socket.send_multipart(raw_msg)
        except (TypeError, zmq.ZMQError) as ex:
            raise VaultMessageError(
                f"The message '{message}' does not be sent.") from ex
        finally:
            self.lock.release()


class SubscriberNode(AsyncSubscriberNode):
    """
    The vault is not thread safe, all its operations are serialized
    by the node lock.
    """

    SUBSCRIBER_CLASS = Subscriber

    def __init__(self, *args, **kwargs):
        self.lock = Lock()
        super().__init__(*args, **kwargs)
        self.main_thread = None
        self.max_workers = None

    def __enter__(self):
        self.connect()
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        self.close()

    def subscribe(self, topic: str, fce):
        with self.lock:
            super().subscribe(topic, fce)

    def unsubscribe(self, topic: str, fce):
        with self.lock:
            super().unsubscribe(topic, fce)

    def get_callbacks(self, topic: str):
        with self.lock:
            return super().get_callbacks(topic)

    def stop(self):
        if self.main_thread:
            self.main_thread.stop()
            self.main_thread = None

    def start(self):
        def _one_event(message: TopicMessage):
            callbacks = self.get_callbacks(message.topic)
            if not callbacks:
                if self.warning_not_mach_topic:
                    self.logger.warning(
                        f"Incoming message does not match any topic, "
                        f"it is ignored (topic: {message.topic})")
                return
            current_thread().name = 'zmq/worker/sub'
            for callback in callbacks:
                try:
                    callback(message)
                except Exception as ex:
                    self.logger.error(
                        f"The callback for the topic '{message.topic}' "
                        f"failed.", exc_info=ex)

        def _main_loop():
            poller = Poller()
            poller.register(self.subscriber.raw_socket, zmq.POLLIN)
            self.logger.info("The main process was started.")
            cur_thread = current_thread()
            with concurrent.futures.ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix='zmq/worker/') as executor:
                while not cur_thread.is_stopped():
                    try:
                        events = poller.poll(timeout=100)
                    except zmq.error.ZMQError:
                        # This happens during shutdown
                        continue
                    for raw_socket, _ in events:
                        try:
                            message = self.subscriber.receive_data(
                                raw_socket=raw_socket)
                            executor.submit(_one_event, message)
                        except VaultThreadDeadLock:
                            self.logger.error(
                                f"The subscriber '{self.subscriber.name}' "
                                f"waits more then 3s for access to socket.")
                        except VaultMessageError as ex:
                            self.logger.error(
                                "The incoming message is ignored.",
                                exc_info=ex)
            self.logger.info("The main process was ended.")

        if not self.main_thread:
            self.main_thread = StoppableThread(target=_main_loop,
                                               name='zmq/main')
            self.main_thread.start()
            time.sleep(.2)  # wait for main thread is ready
        return self.main_thread

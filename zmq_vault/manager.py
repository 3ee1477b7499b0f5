import asyncio
import inspect
import json
import logging
from collections import Counter
from collections.abc import Callable

import zmq
from zmq.asyncio import Poller, Context, Socket

from zmq_vault.vault import SubscriptionVault, VaultException, \
    upstream_filter


class VaultMessageError(VaultException): pass       # flake8: E701
class VaultConnectionError(VaultException): pass    # flake8: E701


class TopicMessage:

    @staticmethod
    def _format_string(data):
        if isinstance(data, str):
            return data.encode('utf8')
        elif isinstance(data, (bytes, bytearray)):
            return data
        elif isinstance(data, (int, float)):
            return str(data).encode('ascii')
        elif data is None:
            return b''
        else:
            raise TypeError(
                'data must be a string, bytearray, int, float or None.')

    def __init__(self, endpoint, **kwargs):
        self.endpoint = endpoint
        self.topic = kwargs.get('topic')
        self.raw_socket = kwargs.get('raw_socket')
        self.payload = kwargs.get('payload', '')

    def __repr__(self):
        return f"topic: {self.topic},  payload: {self.payload}"

    @property
    def payload(self):
        return self._payload

    @payload.setter
    def payload(self, value):
        if isinstance(value, (list, dict)):
            value = json.dumps(value)
        self._payload = value

    def from_json(self):
        return json.loads(self.payload)

    def parse(self, data):
        if len(data) != 2:
            raise VaultMessageError(
                f"The received message (endpoint '{self.endpoint.name}') "
                f"is in unknown format. '{data}'")
        try:
            self.topic = data[0].decode('utf-8')
            payload = data[1]
            if getattr(self.endpoint, 'utf8_decoding', True):
                payload = payload.decode('utf-8')
        except UnicodeDecodeError as ex:
            raise VaultMessageError(
                f"The received message (endpoint '{self.endpoint.name}') "
                f"is not in UTF-8. '{data}'") from ex
        self.payload = payload

    def format_message(self):
        return [self._format_string(it) for it in [self.topic, self.payload]]


class Endpoint:
    """
    The common part of the ZMQ sockets (SUB, PUB) used by the vault.
    """

    socket_type = None

    def __init__(self, **kwargs):
        """
        :param addr:str      address of the endpoint
        :param name:str      name of the endpoint
        :param server:bool   is this endpoint a server side (default False)
        :param sockopts:dict ZMQ socket options
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self._socket: Socket = None
        self.context = Context.instance()
        self.is_closed = False
        self.sockopts = kwargs.get('sockopts', {})
        self.addr = kwargs.get('addr')
        self.name = kwargs.get('name')
        self._server = \
            str(kwargs.get('server', '')).lower() in ('yes', 'true', '1')
        self.identity = kwargs.get('identity')

    @property
    def addr(self) -> str:
        return self._addr

    @addr.setter
    def addr(self, val: str):
        """
        set the address (format: 'protocol://interface:port')
        """
        if not val:
            raise VaultException("The parameter 'addr' is required.")
        self._addr = val

    @property
    def name(self) -> str:
        """
        returns name of this endpoint or its address
        """
        return self._name if self._name else self._addr

    @name.setter
    def name(self, val: str):
        self._name = val

    @property
    def is_server(self) -> bool:
        return self._server

    @property
    def raw_socket(self) -> Socket:
        if not self._socket:
            self._socket = self._create_socket()
        return self._socket

    def add_sock_opt(self, key, val):
        if isinstance(key, str):
            key = getattr(zmq, key)
        if isinstance(val, str):
            val = val.encode('utf8')
        self._sockopts[key] = val

    @property
    def sockopts(self):
        return self._sockopts.copy()

    @sockopts.setter
    def sockopts(self, opts: dict):
        self._sockopts = {}
        for key, val in (opts or {}).items():
            self.add_sock_opt(key, val)

    @property
    def identity(self):
        return self._sockopts.get(zmq.IDENTITY, b'').decode('utf8')

    @identity.setter
    def identity(self, val):
        if val:
            self.logger.debug(
                f"Set identity '{val}' for endpoint '{self.name}'.")
            self.add_sock_opt(zmq.IDENTITY, val)

    def _create_socket(self) -> Socket:
        raw_socket = self.context.socket(self.socket_type)
        for opt, val in self._sockopts.items():
            raw_socket.setsockopt(opt, val)
        if self.is_server:
            self.logger.debug(
                f"The endpoint '{self.name}' binds to the port {self.addr}")
            raw_socket.bind(self.addr)
        else:
            self.logger.debug(
                f"The endpoint '{self.name}' connects to the server "
                f"{self.addr}")
            raw_socket.connect(self.addr)
        return raw_socket

    def connect(self):
        if self._socket is None:
            self.raw_socket
        self.is_closed = False
        return self

    def close(self):
        if self._socket:
            self._socket.close()
            self._socket = None
        self.is_closed = True


class Subscriber(Endpoint):
    """
    ZMQ SUB socket. It holds the upstream filters with a reference counter,
    the same filter can be requested by more topics.
    """

    socket_type = zmq.SUB

    def __init__(self, **kwargs):
        """
        :param utf8_decoding:bool  decode payloads (default True)
        """
        super().__init__(**kwargs)
        self.utf8_decoding = \
            str(kwargs.get('utf8_decoding', True)).lower() \
            in ('yes', 'true', '1')
        self._filters = Counter()

    @property
    def filters(self) -> [str]:
        return list(self._filters.elements())

    def _create_socket(self) -> Socket:
        raw_socket = super()._create_socket()
        for sub_filter in self._filters.elements():
            raw_socket.setsockopt(zmq.SUBSCRIBE, sub_filter.encode('utf8'))
        return raw_socket

    def add_filter(self, sub_filter: str):
        self._filters[sub_filter] += 1
        self.logger.debug(
            f"The subscriber '{self.name}' subscribes '{sub_filter}'.")
        if self._socket:
            self._socket.setsockopt(zmq.SUBSCRIBE, sub_filter.encode('utf8'))

    def remove_filter(self, sub_filter: str):
        if not self._filters[sub_filter]:
            return
        self._filters[sub_filter] -= 1
        if self._filters[sub_filter] == 0:
            del self._filters[sub_filter]
        self.logger.debug(
            f"The subscriber '{self.name}' unsubscribes '{sub_filter}'.")
        if self._socket:
            self._socket.setsockopt(zmq.UNSUBSCRIBE,
                                    sub_filter.encode('utf8'))

    async def receive_data(self, raw_socket=None) -> TopicMessage:
        if not raw_socket:
            raw_socket = self.raw_socket
        raw_data = await raw_socket.recv_multipart()
        self.logger.debug(f"Received (subscriber {self.name}): {raw_data}")
        message = TopicMessage(self, raw_socket=raw_socket)
        message.parse(raw_data)
        return message


class Publisher(Endpoint):

    socket_type = zmq.PUB

    def _create_message(self, topic, payload) -> TopicMessage:
        if self.is_closed:
            raise VaultConnectionError(
                f'The publisher {self.name} is already closed.')
        message = TopicMessage(self, topic=topic, payload=payload,
                               raw_socket=self.raw_socket)
        self.logger.debug("Send (publisher: %s) to %s", self.name, message)
        return message

    async def publish(self, topic: str, payload=None):
        message = self._create_message(topic, payload)
        raw_msg = message.format_message()
        try:
            await message.raw_socket.send_multipart(raw_msg)
        except (TypeError, zmq.ZMQError) as ex:
            raise VaultMessageError(
                f"The message '{message}' does not be sent.") from ex


class SubscriberNode:
    """
    Dispatches messages of one subscriber to the callbacks registered
    by topic patterns. The upstream subscription is done only once for
    each topic pattern.
    """

    SUBSCRIBER_CLASS = Subscriber

    def __init__(self, subscriber: Subscriber = None, *, schema=None,
                 initial_tree=None, delimiter='/', strict=False,
                 warning_not_mach_topic=True):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.subscriber = subscriber
        self.delimiter = delimiter
        self.strict = strict
        self.initial_tree = initial_tree
        self.warning_not_mach_topic = warning_not_mach_topic
        self._stop_main_loop = False
        self._main_task = None
        self._tasks = set()
        self.vault = None
        if schema:
            self.parse_schema(schema)
        if self.vault is None:
            self._build_vault(self.initial_tree)

    def _build_vault(self, tree):
        self.vault = SubscriptionVault(
            initial_tree=tree,
            on_topic_added=self._on_topic_added,
            on_topic_removed=self._on_topic_removed,
            delimiter=self.delimiter,
            strict=self.strict
        )
        for topic, _ in self.vault.topics():
            self._on_topic_added(topic)

    async def __aenter__(self):
        self.connect()
        self._stop_main_loop = False
        self._main_task = asyncio.create_task(self.start(), name='zmq/main')
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        if self._main_task:
            await self._main_task
            self._main_task = None
        self.close()

    def parse_schema(self, schema):
        """
        parses the subscriber and the vault options from configuration.
        The registered callbacks are moved to the new vault and their
        upstream filters to the new subscriber.
        """
        tree = None
        if self.vault is not None:
            tree = self.vault.dump_tree()
            for topic, _ in self.vault.topics():
                self._on_topic_removed(topic)
        if 'subscriber' in schema:
            self.subscriber = self.SUBSCRIBER_CLASS(**schema['subscriber'])
        self.delimiter = schema.get('delimiter', self.delimiter)
        self.strict = \
            str(schema.get('strict', self.strict)).lower() \
            in ('yes', 'true', '1')
        if self.vault is not None:
            self._build_vault(tree)

    def _on_topic_added(self, topic):
        if self.subscriber:
            self.subscriber.add_filter(
                upstream_filter(topic, self.delimiter))

    def _on_topic_removed(self, topic):
        if self.subscriber:
            self.subscriber.remove_filter(
                upstream_filter(topic, self.delimiter))

    def connect(self):
        if not self.subscriber:
            raise VaultException("The node has not got any subscriber.")
        self.subscriber.connect()

    def close(self):
        if self.subscriber:
            self.subscriber.close()

    def subscribe(self, topic: str, fce: Callable):
        """
        Register the callback for the topic pattern. The callback can be
        a function or a coroutine function, it gets a TopicMessage.
        """
        self.vault.add(topic, fce)
        self.logger.debug(f"The callback was registered to "
                          f"the topic: {topic}")

    def unsubscribe(self, topic: str, fce: Callable):
        self.vault.remove(topic, fce)

    def get_callbacks(self, topic: str) -> [Callable]:
        return self.vault.find_matches(topic)

    def stop(self):
        self._stop_main_loop = True

    def _dispatch(self, message: TopicMessage):
        callbacks = self.get_callbacks(message.topic)
        if not callbacks:
            if self.warning_not_mach_topic:
                self.logger.warning(
                    f"Incoming message does not match any topic, "
                    f"it is ignored (topic: {message.topic})")
            return
        loop = asyncio.get_running_loop()
        for callback in callbacks:
            if inspect.iscoroutinefunction(callback):
                task = loop.create_task(callback(message), name='zmq/sub')
                self._tasks.add(task)
                task.add_done_callback(self._handle_task_result)
                continue
            try:
                callback(message)
            except Exception as ex:
                self.logger.error(
                    f"The callback for the topic '{message.topic}' "
                    f"failed.", exc_info=ex)

    def _handle_task_result(self, task: asyncio.Task):
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as ex:
            self.logger.error(f"The callback task {task.get_name()} failed.",
                              exc_info=ex)

    async def start(self):
        poller = Poller()
        poller.register(self.subscriber.raw_socket, zmq.POLLIN)
        self.logger.info("The main loop was started.")
        while not self._stop_main_loop:
            events = await poller.poll(timeout=100)
            for raw_socket, _ in events:
                try:
                    message = await self.subscriber.receive_data(
                        raw_socket=raw_socket)
                except VaultMessageError as ex:
                    self.logger.error("The incoming message is ignored.",
                                      exc_info=ex)
                    continue
                self._dispatch(message)
        self.logger.info("The main loop was ended.")

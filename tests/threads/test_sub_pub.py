import time

import pytest

from ..helpers import run_test_threads, wrapp, wait_for_result2
from zmq_vault.threads import Subscriber, Publisher, SubscriberNode

ADDR = 'ipc:///tmp/vault_sub_pub_threads.pipe'
TOPIC = 'sub'


@pytest.fixture
def data():
    return ['PUB10', 'PUB11', 'PUB20', 'PUB21'].copy()


@pytest.fixture
def data2():
    return ['PUB10', 'PUB11', 'PUB20', 'PUB21'].copy()


@pytest.fixture
def result():
    return []


@pytest.fixture(params=[{'server': True, 'utf8_decoding': True}])
def sub_node(result, request):
    def __process(msg):
        result.append(msg.payload)

    subscriber = Subscriber(
        name='SUB1',
        addr=ADDR,
        server=request.param['server'],
        utf8_decoding=request.param['utf8_decoding'],
        sockopts={'LINGER': 0}
    )

    node = SubscriberNode(subscriber, warning_not_mach_topic=False)
    node.subscribe(f"{TOPIC}/#", __process)
    return node


@pytest.fixture
def pub1():
    return Publisher(name='PUB1', addr=ADDR, sockopts={'LINGER': 0})


@pytest.fixture
def pub2():
    return Publisher(name='PUB2', addr=ADDR, sockopts={'LINGER': 0})


################################################################################
#   Tests
################################################################################


def test_sub_pubs(sub_node, pub1, pub2, data, data2, result):
    """
        The subscriber is server and two clients publish messages.
    """
    @wrapp
    def __process(publisher, p, d):
        while d:
            publisher.publish(f"{TOPIC}/{p}", d.pop())

    result.clear()
    with sub_node:
        pub1.connect()
        pub2.connect()
        time.sleep(.2)  # we have to wait for server is ready
        run_test_threads(
            __process(pub1, 'A', data),
            __process(pub2, 'B', data2),
        )
        assert wait_for_result2(lambda: len(result) == 8, timeout=1)
    pub1.close()
    pub2.close()


@pytest.mark.parametrize("sub_node",
                         [({'server': True, 'utf8_decoding': False})],
                         indirect=["sub_node"])
def test_sub_pub_bytes(sub_node, pub1, result):
    result.clear()
    with sub_node:
        pub1.connect()
        time.sleep(.2)  # we have to wait for server is ready
        pub1.publish(f"{TOPIC}/A", 'XXX')
        assert wait_for_result2(
            lambda: len(result) > 0 and isinstance(result.pop(), bytes),
            timeout=1
        )
    pub1.close()


def test_subscribe_while_running(sub_node, pub1, result):
    """
        The callbacks are registered and removed from other threads.
    """
    received = []

    def __process(msg):
        received.append(msg.topic)

    def __failing(msg):
        raise ValueError('callback error')

    result.clear()
    with sub_node:
        run_test_threads(
            lambda: sub_node.subscribe('x/+', __process),
            lambda: sub_node.subscribe('x/+', __failing),
        )
        pub1.connect()
        time.sleep(.2)  # we have to wait for server is ready
        pub1.publish('x/a', 'A')
        assert wait_for_result2(lambda: received == ['x/a'], timeout=1)
        sub_node.unsubscribe('x/+', __process)
        sub_node.unsubscribe('x/+', __failing)
        assert sub_node.subscriber.filters == [f"{TOPIC}/"]
        pub1.publish('x/b', 'B')
        pub1.publish(f"{TOPIC}/A", 'C')
        assert wait_for_result2(lambda: result == ['C'], timeout=1)
    pub1.close()
    assert received == ['x/a']


def test_invalid_messages_are_ignored(sub_node, pub1, result):
    """
        The main thread skips messages which can not be parsed.
    """
    result.clear()
    with sub_node:
        pub1.connect()
        time.sleep(.2)  # we have to wait for server is ready
        pub1.publish(b'sub/\xff', 'A')
        with pub1.lock:
            pub1.raw_socket.send_multipart([b'sub/A', b'B', b'C'])
        pub1.publish(f"{TOPIC}/A", 'D')
        assert wait_for_result2(lambda: result == ['D'], timeout=1)
        assert sub_node.main_thread.is_alive()
    pub1.close()

import logging
from collections.abc import Callable


class VaultException(Exception): pass                # flake8: E701
class SubscriptionNotFound(VaultException): pass     # flake8: E701


SINGLE_LEVEL = '+'
MULTI_LEVEL = '#'


def _noop(topic):
    pass


def upstream_filter(topic: str, delimiter='/') -> str:
    """
    Returns the literal part of the topic pattern, which can be used
    as ZMQ SUB filter (ZMQ filters are only byte prefixes).
    'a/+/c' -> 'a/', '#' -> '', 'a/b' -> 'a/b'
    """
    res = []
    for sym in (topic or '').split(delimiter):
        if sym in (SINGLE_LEVEL, MULTI_LEVEL):
            res.append('')
            break
        res.append(sym)
    return delimiter.join(res)


class SubscriptionVault:
    """
    Saves subscriptions in a tree structure by topic path.
    Example of subscription topic:
        status/myAccountId/collections/+/things/+/actions/#

    The callback on_topic_added is called when a topic gets the first
    subscriber, on_topic_removed when the last subscriber of the topic
    leaves. Both are called only once per topic, even if there are multiple
    subscribers, so they can be used for subscribing to external topics.
    """

    class TopicNode(object):
        __slots__ = 'children', 'subscriptions', 'parent'

        def __init__(self, parent=None):
            self.children = {}
            self.subscriptions = None
            self.parent = parent

        def __repr__(self):
            return f"TopicNode(children={list(self.children)}, " \
                   f"subscriptions={self.subscriptions})"

        @property
        def is_empty(self) -> bool:
            return not self.children and not self.subscriptions

    def __init__(self, *, initial_tree=None, on_topic_added: Callable = None,
                 on_topic_removed: Callable = None, delimiter='/',
                 strict=False):
        """
        :param initial_tree: TopicNode or dict - a tree to resume from
        :param on_topic_added: Callable(topic) - the first subscriber arrived
        :param on_topic_removed: Callable(topic) - the last subscriber left
        :param delimiter: str - topic segment delimiter
        :param strict: bool - raise SubscriptionNotFound instead of warning
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.on_topic_added = on_topic_added or _noop
        self.on_topic_removed = on_topic_removed or _noop
        self.delimiter = delimiter
        self.strict = strict
        self._root = self.load_tree(initial_tree) \
            if initial_tree is not None else self.TopicNode()

    @property
    def root(self) -> TopicNode:
        return self._root

    def topic_to_path(self, topic) -> [str]:
        return (topic or '').split(self.delimiter)

    def traverse(self, path, step: Callable, node=None, reverse=False):
        """
        Walks the tree along the path and calls step(node, segment, index)
        for each visited node. It goes down by children (default)
        or up by parents (reverse=True, the path has to be reversed).
        The walk stops silently, when the next node does not exist.
        """
        if node is None:
            node = self._root
        for index, segment in enumerate(path):
            if node is None:
                return
            step(node, segment, index)
            node = node.parent if reverse else node.children.get(segment)

    def add(self, topic, subscription):
        path = self.topic_to_path(topic)
        last = len(path) - 1

        def __step(node, segment, index):
            child = node.children.get(segment)
            if child is None:
                child = self.TopicNode(parent=node)
                node.children[segment] = child
            if index == last:
                is_new = not child.subscriptions
                if child.subscriptions is None:
                    child.subscriptions = []
                child.subscriptions.append(subscription)
                if is_new:
                    self.logger.debug(f"The topic '{topic}' was added.")
                    self.on_topic_added(topic)

        self.traverse(path, __step)

    def remove(self, topic, subscription):
        path = self.topic_to_path(topic)
        last = len(path) - 1
        ending = None
        found = False

        def __step(node, segment, index):
            nonlocal ending, found
            ending = node.children.get(segment)
            if index != last or ending is None:
                return
            subscriptions = ending.subscriptions
            if subscriptions and subscription in subscriptions:
                ending.subscriptions = [
                    sub for sub in subscriptions if sub != subscription
                ]
                found = True
            # fires also for an unknown subscription on an emptied topic
            if ending.subscriptions is not None and not ending.subscriptions:
                self.logger.debug(f"The topic '{topic}' was removed.")
                self.on_topic_removed(topic)

        def __prune(node, segment, index):
            parent = node.parent
            if parent is not None and node.is_empty and \
                    parent.children.get(segment) is node:
                del parent.children[segment]

        self.traverse(path, __step)
        if ending is not None:
            self.traverse(path[::-1], __prune, node=ending, reverse=True)
        if not found:
            if self.strict:
                raise SubscriptionNotFound(
                    f"The subscription {subscription!r} was not found "
                    f"(topic: {topic}).")
            self.logger.warning(
                f"Could not unsubscribe, the subscription was not found "
                f"(topic: {topic}, subscription: {subscription!r})")

    def find_matches(self, topic) -> list:
        """
        Returns all subscriptions matching the topic.
        """
        return self.find_matches_by_path(self.topic_to_path(topic))

    def find_matches_by_path(self, path, node=None) -> list:
        res = []
        last = len(path) - 1

        def __step(node, segment, index):
            # wildcards defined in the matched path are not used as wildcards
            multi = node.children.get(MULTI_LEVEL)
            if multi is not None and multi.subscriptions and \
                    segment != MULTI_LEVEL:
                res.extend(multi.subscriptions)
            single = node.children.get(SINGLE_LEVEL)
            if single is not None and segment != SINGLE_LEVEL:
                if index == last:
                    # '+' takes the last segment, nothing is left to recurse
                    res.extend(single.subscriptions or [])
                else:
                    res.extend(
                        self.find_matches_by_path(path[index + 1:], single))
            if index == last:
                child = node.children.get(segment)
                if child is not None and child.subscriptions:
                    res.extend(child.subscriptions)

        self.traverse(path, __step, node=node)
        return res

    def reset(self):
        self._root = self.TopicNode()

    def topics(self):
        """
        Iterates over (topic, [subscription]) of all topics with subscribers.
        """
        def __rec(node, tt):
            if node.subscriptions:
                yield self.delimiter.join(tt), list(node.subscriptions)
            for key, child in node.children.items():
                yield from __rec(child, tt + [key])

        for key, child in self._root.children.items():
            yield from __rec(child, [key])

    @classmethod
    def load_tree(cls, data, parent=None) -> TopicNode:
        """
        Creates the tree from its dict form:
            {'children': {'status': {'subscriptions': [...]}}}
        """
        if isinstance(data, cls.TopicNode):
            return data
        node = cls.TopicNode(parent=parent)
        if data.get('subscriptions') is not None:
            node.subscriptions = list(data['subscriptions'])
        for key, child in (data.get('children') or {}).items():
            node.children[key] = cls.load_tree(child, parent=node)
        return node

    def dump_tree(self, node=None) -> dict:
        if node is None:
            node = self._root
        res = {}
        if node.children:
            res['children'] = {key: self.dump_tree(child)
                               for key, child in node.children.items()}
        if node.subscriptions:
            res['subscriptions'] = list(node.subscriptions)
        return res

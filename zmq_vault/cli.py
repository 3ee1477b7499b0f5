import argparse
import logging
import time

import yaml

from zmq_vault.vault import SubscriptionVault
from zmq_vault.threads import SubscriberNode


def load_vault(schema) -> SubscriptionVault:
    """
    Creates the vault from the schema, each topic pattern is registered
    with itself as the subscription.
    """
    vault = SubscriptionVault(
        delimiter=schema.get('delimiter', '/'),
        strict=str(schema.get('strict', '')).lower() in ('yes', 'true', '1')
    )
    for topic in schema.get('topics') or []:
        vault.add(topic, topic)
    return vault


def match(schema, topics, print_stdout=True):
    """
    Print patterns of the schema which match the topics
    :param schema: dict - the vault schema
    :param topics: [str] - published topics
    :return: {topic: [pattern]}
    """
    vault = load_vault(schema)
    res = {topic: vault.find_matches(topic) for topic in topics}
    if print_stdout:
        for topic, patterns in res.items():
            print(f"{topic}: {' '.join(patterns) if patterns else '-'}")
    return res


def dump(schema) -> str:
    """
    Returns the tree of the schema topics in YAML
    """
    return yaml.safe_dump(load_vault(schema).dump_tree(),
                          default_flow_style=False)


def listen(schema):
    """
    Print messages received by the subscriber of the schema
    :param schema: dict - the vault schema with the subscriber definition
    """
    node = SubscriberNode(schema=schema, warning_not_mach_topic=False)

    def __print(pattern):
        def step(message):
            print(f"{message.topic} {pattern} {message.payload}")
        return step

    for topic in schema.get('topics') or []:
        node.subscribe(topic, __print(topic))
    try:
        with node:
            while True:
                time.sleep(.1)
    except KeyboardInterrupt:
        pass


def main():
    parser = argparse.ArgumentParser(
        prog='ZMQ subscription vault',
        description='This tool can match and listen topics of the vault')
    parser.add_argument('-v', '--verbose', help='Verbose.', action='store_true')
    subparsers = parser.add_subparsers(help='sub-command help')
    # Match
    parser_match = subparsers.add_parser(
        'match', help='Print schema topics matching the published topics.')
    parser_match.add_argument('schema', type=argparse.FileType('r'),
                              help='The vault schema file')
    parser_match.add_argument('topics', nargs='+', help='Published topics.')
    parser_match.set_defaults(
        func=lambda args: match(yaml.safe_load(args.schema), args.topics)
    )
    # Dump
    parser_dump = subparsers.add_parser(
        'dump', help='Print the topic tree of the schema.')
    parser_dump.add_argument('schema', type=argparse.FileType('r'),
                             help='The vault schema file')
    parser_dump.set_defaults(
        func=lambda args: print(dump(yaml.safe_load(args.schema)))
    )
    # Listen
    parser_listen = subparsers.add_parser(
        'listen', help='Print messages of the schema topics.')
    parser_listen.add_argument('schema', type=argparse.FileType('r'),
                               help='The vault schema file')
    parser_listen.set_defaults(
        func=lambda args: listen(yaml.safe_load(args.schema))
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    if not hasattr(args, 'func'):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()

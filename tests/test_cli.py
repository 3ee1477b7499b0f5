import sys
import time
from types import SimpleNamespace

import pytest
import yaml

from zmq_vault import cli
from zmq_vault.threads import Publisher

SCHEMA = """
subscriber:
  addr: ipc:///tmp/test_vault_cli.pipe
topics:
  - status/+/things/#
  - status/acc/things/t1
  - status/#
"""


@pytest.fixture
def schema():
    return yaml.safe_load(SCHEMA)


def test_match(schema, capsys):
    res = cli.match(schema, ['status/acc/things/t1', 'other/acc'])
    assert res == {
        'status/acc/things/t1': ['status/#', 'status/+/things/#',
                                 'status/acc/things/t1'],
        'other/acc': []
    }
    out = capsys.readouterr().out.splitlines()
    assert out == [
        'status/acc/things/t1: status/# status/+/things/# '
        'status/acc/things/t1',
        'other/acc: -'
    ]


def test_dump(schema):
    tree = yaml.safe_load(cli.dump(schema))
    assert tree['children']['status']['children']['#'] == \
        {'subscriptions': ['status/#']}
    assert set(tree['children']['status']['children']) == {'+', '#', 'acc'}


def test_main_match(tmp_path, monkeypatch, capsys):
    schema_file = tmp_path / 'schema.yaml'
    schema_file.write_text(SCHEMA)
    monkeypatch.setattr(sys, 'argv', ['zmq_vault', 'match', str(schema_file),
                                      'status/x'])
    cli.main()
    assert capsys.readouterr().out == 'status/x: status/#\n'


def test_listen(monkeypatch, capsys):
    addr = 'ipc:///tmp/test_vault_listen.pipe'
    schema = {
        'subscriber': {'addr': addr, 'server': True,
                       'sockopts': {'LINGER': 0}},
        'topics': ['status/#'],
    }
    publisher = Publisher(addr=addr, sockopts={'LINGER': 0})

    def __sleep(sec):
        publisher.connect()
        time.sleep(.2)  # we have to wait for server is ready
        publisher.publish('status/a', 'A')
        publisher.publish('other/a', 'B')
        time.sleep(.5)
        raise KeyboardInterrupt()

    monkeypatch.setattr(cli, 'time', SimpleNamespace(sleep=__sleep))
    try:
        cli.listen(schema)
    finally:
        publisher.close()
    assert capsys.readouterr().out.splitlines() == ['status/a status/# A']

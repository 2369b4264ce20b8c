import argparse
import json
from datetime import datetime, timezone
import pytest
from cli import _identities_from_doc, build_parser, load_peers, load_people, resolve_since
from normalize.models import Identity


def _args(*argv):
    return build_parser().parse_args(list(argv))


def test_load_people_from_flags_and_file(tmp_path):
    people_file = tmp_path / 'people.json'
    people_file.write_text(json.dumps(['Bob Jones|bob@corp.com', {'displayName': 'Carol White', 'mail': 'carol@corp.com'}]), encoding='utf-8')
    args = _args('--person', 'Alice Smith|alice@corp.com', '--person', 'Bob Jones|bob@corp.com', '--people-file', str(people_file))
    people = load_people(args)
    assert people == [
        Identity('Alice Smith', 'alice@corp.com'),
        Identity('Bob Jones', 'bob@corp.com'),
        Identity('Carol White', 'carol@corp.com'),
    ]


def test_load_people_unreadable_file_is_ignored(tmp_path):
    bad = tmp_path / 'people.json'
    bad.write_text('{not json', encoding='utf-8')
    args = _args('--person', 'Alice Smith', '--people-file', str(bad))
    assert load_people(args) == [Identity('Alice Smith', '')]


def test_load_peers_excludes_tracked_people(tmp_path):
    team = tmp_path / 'team.json'
    team.write_text(json.dumps({'members': [
        {'name': 'Alice Smith', 'email': 'alice@corp.com'},
        {'name': 'Dave Brown', 'email': 'dave@corp.com'},
        42,
    ]}), encoding='utf-8')
    args = _args('--person', 'Alice Smith|alice@corp.com', '--team-file', str(team), '--peer', 'Erin Gray|erin@corp.com')
    peers = load_peers(args, load_people(args))
    assert peers == [Identity('Erin Gray', 'erin@corp.com'), Identity('Dave Brown', 'dave@corp.com')]


def test_identities_from_doc_rejects_non_lists():
    assert _identities_from_doc('nope') == []


def test_resolve_since_from_days():
    args = argparse.Namespace(start='', days=7)
    now = datetime(2025, 3, 10, 15, 30, tzinfo=timezone.utc)
    assert resolve_since(args, now=now) == '2025-03-03T00:00:00+00:00'


def test_resolve_since_default_days():
    args = argparse.Namespace(start='', days=None)
    now = datetime(2025, 3, 31, tzinfo=timezone.utc)
    assert resolve_since(args, now=now) == '2025-03-01T00:00:00+00:00'


def test_resolve_since_start_wins():
    args = argparse.Namespace(start='2025-01-15', days=7)
    assert resolve_since(args) == '2025-01-15T00:00:00+00:00'


@pytest.mark.parametrize('start,days', [('15/01/2025', None), ('', 0)])
def test_resolve_since_rejects_bad_input(start, days):
    with pytest.raises(ValueError):
        resolve_since(argparse.Namespace(start=start, days=days))


def test_output_choices_enforced():
    with pytest.raises(SystemExit):
        _args('--output', 'html')

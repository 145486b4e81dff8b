import pytest

from mihomo_merge.errors import StructuralError
from mihomo_merge.interpreter import ParseOptions
from mihomo_merge.pipeline import load_document, load_sources, run_generation
from mihomo_merge.storage import AppPaths, Subscription

GOOD = "proxies:\n  - {name: A, type: ss, server: a.example, port: 1}\n"


@pytest.fixture
def paths(tmp_path):
    return AppPaths(tmp_path / 'config', tmp_path / 'cache')


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding='utf-8')
    return str(path)


def test_bad_date_subscription_is_skipped(paths, tmp_path):
    subs = [
        Subscription(id='bad', path=write(tmp_path, 'bad.yaml', "updated: 2024-02-30\n")),
        Subscription(id='good', path=write(tmp_path, 'good.yaml', GOOD)),
    ]
    report = load_sources(subs, None, paths, ParseOptions(allow_base64=True))
    assert len(report.configs) == 1
    assert report.loaded == ['good']
    assert [sub_id for sub_id, _ in report.skipped] == ['bad']


def test_disabled_subscription_is_neither_loaded_nor_skipped(paths, tmp_path):
    subs = [Subscription(id='off', path=write(tmp_path, 'off.yaml', GOOD), enabled=False)]
    report = load_sources(subs, None, paths, ParseOptions(allow_base64=False))
    assert report.configs == [] and report.loaded == [] and report.skipped == []


@pytest.mark.parametrize('text', ["- a\n", "updated: 2024-02-30\n"])
def test_load_document_errors(tmp_path, text):
    with pytest.raises(StructuralError, match='failed to load template'):
        load_document(write(tmp_path, 't.yaml', text), 'template')


def test_load_document_missing_file(tmp_path):
    with pytest.raises(StructuralError, match='failed to load base config'):
        load_document(tmp_path / 'missing.yaml', 'base config')


def test_run_generation(paths, tmp_path):
    report = load_sources(
        [Subscription(id='good', path=write(tmp_path, 'good.yaml', GOOD))],
        None, paths, ParseOptions(allow_base64=False),
    )
    template = load_document(write(tmp_path, 't.yaml', "mode: rule\n"), 'template')
    result = run_generation(template, report)
    assert result.proxy_names == ['A']
    assert result.config.extension['mode'] == 'rule'

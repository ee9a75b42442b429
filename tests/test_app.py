"""Tests for the Dash application wiring."""

import base64
import threading

import dash
import dash_bootstrap_components as dbc
import pytest
from dash import no_update

from conftest import FakeEngine, make_upload
from rnaseq_dashboard.app import (
    create_app,
    create_layout,
    render_plots,
    request_size_limit,
    run_outcome,
    upload_summary,
)
from rnaseq_dashboard.config import Config
from rnaseq_dashboard.orchestrator import AnalysisOrchestrator, RunStatus
from rnaseq_dashboard.session import SessionRegistry, SessionSnapshot
from rnaseq_dashboard.validation import validate_metadata
from rnaseq_dashboard.visualizations import is_placeholder


LAYOUT_IDS = {
    'upload-counts',
    'upload-metadata',
    'counts-upload-status',
    'metadata-upload-status',
    'run-analysis-btn',
    'cancel-btn',
    'progress-bar',
    'analysis-status',
    'download-example-btn',
    'de-content',
    'download-results-btn',
    'download-results',
    'plots-content',
    'notifications',
    'tabs',
    'session-id',
    'state-generation',
    'progress-poll',
}


def component_ids(component):
    ids = set()
    if getattr(component, 'id', None) is not None:
        ids.add(component.id)
    children = getattr(component, 'children', None)
    if children is None:
        return ids
    if not isinstance(children, (list, tuple)):
        children = [children]
    for child in children:
        if hasattr(child, 'to_plotly_json'):
            ids |= component_ids(child)
    return ids


@pytest.fixture
def config(tmp_path):
    return Config(paths={"user_home": tmp_path})


class TestLayout:
    """Tests for the page layout."""

    def test_layout_ids(self, config):
        assert LAYOUT_IDS <= component_ids(create_layout(config))

    def test_each_page_load_gets_a_session(self, config):
        first = create_layout(config).children[-3]
        second = create_layout(config).children[-3]

        assert first.id == 'session-id'
        assert first.data != second.data

    def test_request_size_limit(self):
        limit = request_size_limit(1024)

        # two files base64-encoded
        assert limit > 2 * 1024 * 4 / 3

    def test_create_app(self, config):
        app = create_app(config, registry=SessionRegistry(), engine=FakeEngine())

        assert isinstance(app, dash.Dash)
        assert app.server.config['MAX_CONTENT_LENGTH'] == request_size_limit(config.max_upload_bytes)
        assert 'de-content.children' in app.callback_map
        assert 'plots-content.children' in app.callback_map


class TestRendering:
    """Tests for what the callbacks hand to the page."""

    def test_render_plots_on_empty_snapshot(self, config):
        figures = render_plots(SessionSnapshot(), config.defaults)

        assert sorted(figures) == sorted(['volcano', 'heatmap', 'pca', 'sample_distance', 'ma', 'dispersion'])
        assert all(is_placeholder(fig) for fig in figures.values())

    def test_render_plots_after_run(self, config, fitted, dataset):
        model, results = fitted
        counts, metadata = dataset
        snapshot = SessionSnapshot(counts, metadata, model, results, generation=1)
        config.defaults.heatmap_top_n = 20

        figures = render_plots(snapshot, config.defaults)

        assert not any(is_placeholder(fig) for fig in figures.values())
        assert len(figures['heatmap'].data[0].y) == 20

    def test_upload_summary(self, dataset):
        _, metadata = dataset
        result, _ = validate_metadata(metadata)

        summary = upload_summary("Metadata", result, "Samples: 6")

        assert summary.color == "success"


class TestRunOutcome:
    """Tests for the notification shown when a run finishes."""

    def test_success(self, dataset):
        counts, metadata = dataset
        session = SessionRegistry().get("s")
        run = AnalysisOrchestrator(session, engine=FakeEngine()).start(
            make_upload(counts, "counts.csv"), make_upload(metadata, "metadata.csv")
        )
        assert run.wait(timeout=10)

        alert, toast = run_outcome(run, session.snapshot)

        assert toast.header == "Analysis complete!"
        assert alert.color == "success"
        assert "200 genes tested" in toast.children

    def test_failure_mentions_previous_results(self, dataset):
        counts, metadata = dataset
        session = SessionRegistry().get("s")
        uploads = make_upload(counts, "counts.csv"), make_upload(metadata, "metadata.csv")
        AnalysisOrchestrator(session, engine=FakeEngine()).run(*uploads)

        run = AnalysisOrchestrator(session, engine=FakeEngine(fail_on="fit")).start(*uploads)
        assert run.wait(timeout=10)
        alert, toast = run_outcome(run, session.snapshot)

        assert isinstance(alert, dbc.Alert)
        assert alert.color == "danger"
        assert "previous run" in alert.children
        assert toast.header == "Analysis failed"


def encode_upload(df, filename):
    """The ``contents`` string dcc.Upload hands to a callback."""
    sep = ',' if filename.endswith('.csv') else '\t'
    payload = base64.b64encode(df.to_csv(sep=sep).encode()).decode()
    return f"data:text/csv;base64,{payload}"


def get_callback(app, name):
    """The undecorated function behind a registered callback."""
    for entry in app.callback_map.values():
        func = entry['callback']
        original = getattr(func, '__wrapped__', func)
        if original.__name__ == name:
            return original
    raise KeyError(name)


@pytest.fixture
def uploads(dataset):
    counts, metadata = dataset
    return encode_upload(counts, 'counts.csv'), 'counts.csv', encode_upload(metadata, 'metadata.tsv'), 'metadata.tsv'


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()


class TestCallbacks:
    """Tests for the run / poll / cancel callbacks."""

    def make_app(self, config, engine):
        registry = SessionRegistry()
        return create_app(config, registry=registry, engine=engine), registry

    def test_supplied_registry_is_used(self, config, uploads):
        app, registry = self.make_app(config, FakeEngine())

        get_callback(app, 'run_analysis')(1, *uploads, 'sid')

        assert 'sid' in registry
        assert registry.get('sid').current_run.wait(timeout=10)

    def test_run_button_disabled_while_running(self, config, uploads, gate):
        engine = FakeEngine(gate=gate)
        app, registry = self.make_app(config, engine)
        run_analysis = get_callback(app, 'run_analysis')
        poll_progress = get_callback(app, 'poll_progress')

        status, poll_disabled, run_disabled, cancel_disabled = run_analysis(1, *uploads, 'sid')
        assert status.color == 'info'
        assert (poll_disabled, run_disabled, cancel_disabled) == (False, True, False)

        assert engine.fit_started.wait(timeout=10)
        value, label, status, *buttons, toast, generation = poll_progress(1, 'sid')
        assert (value, label) == (80, "Running DESeq2 analysis...")
        assert tuple(buttons) == (False, True, False)
        assert toast is no_update
        assert generation is no_update

        status, *buttons = run_analysis(2, *uploads, 'sid')
        assert status.color == 'warning'
        assert tuple(buttons) == (False, True, False)

        gate.set()
        assert registry.get('sid').current_run.wait(timeout=10)
        value, label, status, *buttons, toast, generation = poll_progress(2, 'sid')
        assert value == 100
        assert tuple(buttons) == (True, False, True)
        assert toast.header == "Analysis complete!"
        assert generation == 1
        assert engine.fit_calls == 1

    def test_run_without_uploads(self, config, uploads):
        app, registry = self.make_app(config, FakeEngine())

        status, *rest = get_callback(app, 'run_analysis')(1, None, None, uploads[2], uploads[3], 'sid')

        assert status.color == 'warning'
        assert all(item is no_update for item in rest)
        assert registry.get('sid').current_run is None

    def test_failed_run_re_enables_run_button(self, config, dataset):
        counts, metadata = dataset
        bad_metadata = metadata.rename(index={metadata.index[0]: 'S4'})
        app, registry = self.make_app(config, FakeEngine())

        get_callback(app, 'run_analysis')(
            1, encode_upload(counts, 'counts.csv'), 'counts.csv',
            encode_upload(bad_metadata, 'metadata.csv'), 'metadata.csv', 'sid'
        )
        assert registry.get('sid').current_run.wait(timeout=10)
        _, _, status, *buttons, toast, generation = get_callback(app, 'poll_progress')(1, 'sid')

        assert tuple(buttons) == (True, False, True)
        assert toast.header == "Analysis failed"
        assert "S4" in toast.children
        assert status.color == 'danger'
        assert generation == 0

    def test_cancel(self, config, uploads, gate):
        engine = FakeEngine(gate=gate)
        app, registry = self.make_app(config, engine)
        get_callback(app, 'run_analysis')(1, *uploads, 'sid')
        assert engine.fit_started.wait(timeout=10)

        status = get_callback(app, 'cancel_analysis')(1, 'sid')
        gate.set()
        run = registry.get('sid').current_run
        assert run.wait(timeout=10)

        assert status.color == 'warning'
        assert run.status == RunStatus.CANCELLED
        *_, toast, generation = get_callback(app, 'poll_progress')(1, 'sid')
        assert toast.header == "Analysis cancelled"
        assert registry.get('sid').snapshot.is_empty

    def test_poll_without_run(self, config):
        app, _ = self.make_app(config, FakeEngine())

        outputs = get_callback(app, 'poll_progress')(1, 'sid')

        assert outputs[:2] == (0, "")
        assert outputs[3:6] == (True, False, True)

    def test_results_table_and_download(self, config, uploads):
        app, registry = self.make_app(config, FakeEngine())
        download_results = get_callback(app, 'download_results')
        render_de_table = get_callback(app, 'render_de_table')
        assert download_results(1, 'sid') is no_update

        get_callback(app, 'run_analysis')(1, *uploads, 'sid')
        assert registry.get('sid').current_run.wait(timeout=10)

        download = download_results(1, 'sid')
        assert download['filename'] == "de_results.csv"
        assert download['content'].startswith("gene,baseMean,log2FoldChange")
        assert len(download['content'].strip().splitlines()) == 201
        assert render_de_table('upload', 1, 'sid') is no_update
        assert len(render_de_table('de', 1, 'sid').data) == 200

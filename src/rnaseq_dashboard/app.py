"""Main Dash application for the RNA-seq dashboard."""

import logging
import uuid
from typing import Dict, Optional

import dash
from dash import dcc, html, Input, Output, State, no_update
import dash_bootstrap_components as dbc
import plotly.graph_objects as go

from rnaseq_dashboard.config import AnalysisDefaults, Config, get_config
from rnaseq_dashboard.errors import AnalysisError, RunInProgress
from rnaseq_dashboard.example_data import simulate_dataset, to_delimited
from rnaseq_dashboard.orchestrator import AnalysisOrchestrator, AnalysisRun, RunStatus
from rnaseq_dashboard.readers import UploadedFile, read_upload
from rnaseq_dashboard.session import SessionRegistry, SessionSnapshot
from rnaseq_dashboard.validation import (
    ValidationResult,
    drop_annotation_columns,
    validate_count_matrix,
    validate_metadata,
)
from rnaseq_dashboard.visualizations import PLOT_GRID, PUBLISHERS, results_table


logger = logging.getLogger(__name__)

ACCEPTED_EXTENSIONS = ".csv,.tsv,.txt"

UPLOAD_STYLE = {
    'width': '100%',
    'height': '60px',
    'lineHeight': '60px',
    'borderWidth': '2px',
    'borderStyle': 'dashed',
    'borderRadius': '5px',
    'textAlign': 'center',
    'margin': '10px 0'
}


def request_size_limit(max_upload_bytes: int) -> int:
    """Largest request Flask accepts: both uploads, base64-encoded, plus slack."""
    return int(2 * max_upload_bytes * 4 / 3) + 1024 * 1024


def _upload_widget(upload_id: str, label: str, max_size: int):
    return dcc.Upload(
        id=upload_id,
        children=html.Div(['Drag and Drop or ', html.A(label)]),
        style=UPLOAD_STYLE,
        accept=ACCEPTED_EXTENSIONS,
        max_size=max_size,
        multiple=False
    )


def create_layout(config: Config):
    """Create the main dashboard layout; each page load starts a new session."""
    upload_tab = dbc.Card([
        dbc.CardBody([
            html.Label("Counts Data (.csv, .tsv, .txt):", className="fw-bold"),
            _upload_widget('upload-counts', 'Select Counts File', config.max_upload_bytes),
            html.Div(id='counts-upload-status', className="mt-2"),

            html.Hr(className="my-3"),

            html.Label("Metadata (.csv, .tsv, .txt):", className="fw-bold"),
            _upload_widget('upload-metadata', 'Select Metadata File', config.max_upload_bytes),
            html.Div(id='metadata-upload-status', className="mt-2"),

            html.Hr(className="my-3"),

            dbc.Row([
                dbc.Col(dbc.Button(
                    "Run Analysis",
                    id="run-analysis-btn",
                    color="primary",
                    size="lg",
                    className="w-100"
                ), width=8),
                dbc.Col(dbc.Button(
                    "Cancel",
                    id="cancel-btn",
                    color="secondary",
                    size="lg",
                    className="w-100",
                    disabled=True
                ), width=4)
            ]),
            dbc.Progress(id='progress-bar', value=0, striped=True, animated=True, className="mt-3"),
            html.Div(id='analysis-status', className="mt-3"),

            html.Hr(className="my-3"),

            dbc.Button(
                "Download Example Data",
                id="download-example-btn",
                color="secondary",
                size="sm",
                outline=True
            ),
            dcc.Download(id="download-example-counts"),
            dcc.Download(id="download-example-metadata")
        ])
    ], className="mt-3")

    de_tab = html.Div([
        html.Div(id='de-content', className="mt-3"),
        dbc.Button(
            "Download Full Results (CSV)",
            id="download-results-btn",
            color="primary",
            className="mt-3"
        ),
        dcc.Download(id="download-results")
    ])

    return dbc.Container([
        dbc.Row([
            dbc.Col([
                html.H1(config.app_title, className="text-primary mb-2"),
                html.Hr()
            ])
        ]),

        dbc.Tabs([
            dbc.Tab(upload_tab, label="Data Upload", tab_id="upload"),
            dbc.Tab(de_tab, label="Differential Expression", tab_id="de"),
            dbc.Tab(html.Div(id='plots-content', className="mt-3"), label="Plots", tab_id="plots")
        ], id='tabs', active_tab='upload'),

        html.Div(
            id='notifications',
            style={'position': 'fixed', 'top': 16, 'right': 16, 'width': 360, 'zIndex': 1080}
        ),

        dcc.Store(id='session-id', data=uuid.uuid4().hex),
        dcc.Store(id='state-generation', data=0),
        dcc.Interval(id='progress-poll', interval=config.progress_interval_ms, disabled=True)

    ], fluid=True, className="py-4")


def upload_summary(kind: str, result: ValidationResult, detail: str):
    """Status message shown under an upload widget."""
    if result.valid:
        msg = dbc.Alert([
            html.Strong(f"✓ {kind} uploaded successfully!"),
            html.Br(),
            detail
        ], color="success")
    else:
        msg = dbc.Alert([
            html.Strong("✗ Validation errors:"),
            html.Ul([html.Li(err) for err in result.errors])
        ], color="danger")

    if result.warnings:
        msg = html.Div([
            msg,
            dbc.Alert([
                html.Strong("⚠ Warnings:"),
                html.Ul([html.Li(w.message) for w in result.warnings])
            ], color="warning")
        ])
    return msg


def plot_options(defaults: AnalysisDefaults) -> Dict[str, dict]:
    return {
        'volcano': {'pvalue_cutoff': defaults.pvalue_cutoff, 'lfc_cutoff': defaults.log2fc_cutoff},
        'heatmap': {'top_n': defaults.heatmap_top_n},
        'pca': {'top_n': defaults.pca_top_n},
    }


def render_plots(snapshot: SessionSnapshot, defaults: AnalysisDefaults) -> Dict[str, go.Figure]:
    """Render every plot view for one snapshot."""
    options = plot_options(defaults)
    return {
        key: publisher(snapshot, **options.get(key, {}))
        for key, publisher in PUBLISHERS.items()
    }


def run_outcome(run: AnalysisRun, snapshot: SessionSnapshot):
    """(status alert, toast) for a finished run."""
    if run.status == RunStatus.SUCCEEDED:
        counts = run.result.direction_counts()
        text = (
            f"{len(run.result)} genes tested in {run.elapsed:.1f}s. "
            f"Up-regulated: {counts['up']} | Down-regulated: {counts['down']}"
        )
        return (
            dbc.Alert("Analysis completed successfully!", color="success"),
            dbc.Toast(text, header="Analysis complete!", icon="success",
                      duration=5000, dismissable=True, is_open=True)
        )

    if run.status == RunStatus.CANCELLED:
        header, color = "Analysis cancelled", "warning"
    else:
        header, color = "Analysis failed", "danger"
    if not snapshot.is_empty:
        footnote = " Showing results from the previous run."
    else:
        footnote = ""
    return (
        dbc.Alert(f"{header}: {run.error}.{footnote}", color=color),
        dbc.Toast(run.error, header=header, icon=color,
                  duration=8000, dismissable=True, is_open=True)
    )


def register_callbacks(app: dash.Dash, config: Config, registry: SessionRegistry, engine=None):
    """Wire the layout to the session registry and the analysis pipeline."""
    defaults = config.defaults

    @app.callback(
        Output('counts-upload-status', 'children'),
        Input('upload-counts', 'contents'),
        State('upload-counts', 'filename'),
        prevent_initial_call=True
    )
    def upload_counts(contents, filename):
        """Preview the count matrix upload."""
        if contents is None:
            return ""
        try:
            df = read_upload(UploadedFile.from_contents(contents, filename), config.paths.upload_dir)
        except AnalysisError as e:
            logger.error(f"Error reading counts upload: {e}")
            return dbc.Alert(str(e), color="danger")

        result, schema = validate_count_matrix(drop_annotation_columns(df))
        detail = f"Genes: {schema.n_genes:,} | Samples: {schema.n_samples}" if schema else ""
        return upload_summary("Count matrix", result, detail)

    @app.callback(
        Output('metadata-upload-status', 'children'),
        Input('upload-metadata', 'contents'),
        State('upload-metadata', 'filename'),
        prevent_initial_call=True
    )
    def upload_metadata(contents, filename):
        """Preview the metadata upload."""
        if contents is None:
            return ""
        try:
            df = read_upload(UploadedFile.from_contents(contents, filename), config.paths.upload_dir)
        except AnalysisError as e:
            logger.error(f"Error reading metadata upload: {e}")
            return dbc.Alert(str(e), color="danger")

        result, schema = validate_metadata(df, design_factor=defaults.design_factor)
        detail = f"Samples: {len(df)} | Columns: {len(df.columns)}"
        return upload_summary("Metadata", result, detail)

    @app.callback(
        Output('analysis-status', 'children'),
        Output('progress-poll', 'disabled'),
        Output('run-analysis-btn', 'disabled'),
        Output('cancel-btn', 'disabled'),
        Input('run-analysis-btn', 'n_clicks'),
        State('upload-counts', 'contents'),
        State('upload-counts', 'filename'),
        State('upload-metadata', 'contents'),
        State('upload-metadata', 'filename'),
        State('session-id', 'data'),
        prevent_initial_call=True
    )
    def run_analysis(n_clicks, counts_contents, counts_name, metadata_contents, metadata_name, session_id):
        """Start a background analysis run for this session."""
        if not n_clicks:
            return no_update, no_update, no_update, no_update
        if not counts_contents or not metadata_contents:
            return (dbc.Alert("Please upload both counts and metadata files", color="warning"),
                    no_update, no_update, no_update)

        session = registry.get(session_id)
        orchestrator = AnalysisOrchestrator(
            session,
            engine=engine,
            design_factor=defaults.design_factor,
            fit_type=defaults.fit_type,
            upload_dir=config.paths.upload_dir
        )
        try:
            orchestrator.start(
                UploadedFile.from_contents(counts_contents, counts_name),
                UploadedFile.from_contents(metadata_contents, metadata_name)
            )
        except RunInProgress as e:
            return dbc.Alert(str(e), color="warning"), False, True, False
        except AnalysisError as e:
            logger.error(f"Could not start analysis: {e}")
            return dbc.Alert(f"Error: {e}", color="danger"), True, False, True

        return dbc.Alert("Running RNA-seq Analysis...", color="info"), False, True, False

    @app.callback(
        Output('analysis-status', 'children', allow_duplicate=True),
        Input('cancel-btn', 'n_clicks'),
        State('session-id', 'data'),
        prevent_initial_call=True
    )
    def cancel_analysis(n_clicks, session_id):
        run = registry.get(session_id).current_run
        if not n_clicks or run is None or run.done:
            return no_update
        run.cancel()
        return dbc.Alert("Cancelling analysis...", color="warning")

    @app.callback(
        Output('progress-bar', 'value'),
        Output('progress-bar', 'label'),
        Output('analysis-status', 'children', allow_duplicate=True),
        Output('progress-poll', 'disabled', allow_duplicate=True),
        Output('run-analysis-btn', 'disabled', allow_duplicate=True),
        Output('cancel-btn', 'disabled', allow_duplicate=True),
        Output('notifications', 'children'),
        Output('state-generation', 'data'),
        Input('progress-poll', 'n_intervals'),
        State('session-id', 'data'),
        prevent_initial_call=True
    )
    def poll_progress(n_intervals, session_id):
        """Mirror the active run's progress; publish the outcome once it finishes."""
        session = registry.get(session_id)
        run = session.current_run
        if run is None:
            return 0, "", no_update, True, False, True, no_update, no_update

        event = run.progress
        value = int(round(event.fraction * 100)) if event else 0
        label = event.detail if event else ""
        if not run.done:
            return value, label, no_update, False, True, False, no_update, no_update

        snapshot = session.snapshot
        status, toast = run_outcome(run, snapshot)
        return value, label, status, True, False, True, toast, snapshot.generation

    @app.callback(
        Output('de-content', 'children'),
        Input('tabs', 'active_tab'),
        Input('state-generation', 'data'),
        State('session-id', 'data')
    )
    def render_de_table(active_tab, generation, session_id):
        """Results table; only built while its tab is visible."""
        if active_tab != 'de':
            return no_update
        snapshot = registry.get(session_id).snapshot
        return results_table(snapshot.results, page_size=defaults.table_page_size)

    @app.callback(
        Output('plots-content', 'children'),
        Input('tabs', 'active_tab'),
        Input('state-generation', 'data'),
        State('session-id', 'data')
    )
    def render_plot_grid(active_tab, generation, session_id):
        """Six diagnostic plots; only built while their tab is visible."""
        if active_tab != 'plots':
            return no_update
        figures = render_plots(registry.get(session_id).snapshot, defaults)
        return [
            dbc.Row([
                dbc.Col(dcc.Graph(id=f'{key}-plot', figure=figures[key]), md=6)
                for key in row
            ], className="mb-4")
            for row in PLOT_GRID
        ]

    @app.callback(
        Output("download-results", "data"),
        Input("download-results-btn", "n_clicks"),
        State('session-id', 'data'),
        prevent_initial_call=True
    )
    def download_results(n_clicks, session_id):
        """Download results as CSV."""
        results = registry.get(session_id).snapshot.results
        if not n_clicks or results is None:
            return no_update
        return dcc.send_string(results.to_csv(index=False), "de_results.csv")

    @app.callback(
        Output("download-example-counts", "data"),
        Output("download-example-metadata", "data"),
        Input("download-example-btn", "n_clicks"),
        prevent_initial_call=True
    )
    def download_example(n_clicks):
        """Download a synthetic counts / metadata pair."""
        if not n_clicks:
            return no_update, no_update
        counts, metadata = simulate_dataset()
        return (
            dcc.send_string(to_delimited(counts, 'csv'), "sample_counts.csv"),
            dcc.send_string(to_delimited(metadata, 'csv'), "sample_metadata.csv")
        )


def create_app(
    config: Optional[Config] = None,
    registry: Optional[SessionRegistry] = None,
    engine=None
) -> dash.Dash:
    """Build the Dash app; ``engine`` defaults to the shared DESeq2 engine."""
    config = config or get_config()
    if registry is None:
        registry = SessionRegistry(ttl_seconds=config.session_ttl_minutes * 60)

    app = dash.Dash(
        __name__,
        external_stylesheets=[dbc.themes.BOOTSTRAP],
        title=config.app_title
    )
    app.server.config['MAX_CONTENT_LENGTH'] = request_size_limit(config.max_upload_bytes)
    app.layout = lambda: create_layout(config)

    register_callbacks(app, config, registry, engine=engine)
    return app


def main():
    """Run the Dash application."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    config.initialize()

    app = create_app(config)
    app.run(
        debug=config.debug,
        host=config.host,
        port=config.port
    )


if __name__ == '__main__':
    main()

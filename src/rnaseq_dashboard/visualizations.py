"""View publishers: projections of the session snapshot into figures and tables.

Every publisher reads exactly one snapshot field (``results`` or ``model``).
When that field is absent it renders a "no data" placeholder; when the engine
fails while rendering it renders an error placeholder. Publishers never raise.
"""

import base64
import functools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from dash import dash_table, html
from dash.dash_table.Format import Format, Scheme
from scipy.cluster.hierarchy import dendrogram, linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from rnaseq_dashboard.errors import AnalysisError, NoDataAvailable
from rnaseq_dashboard.models import AnalysisModel, ResultTable
from rnaseq_dashboard.session import SessionSnapshot


logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "No data available. Upload files and run the analysis."


def placeholder_figure(title: str, message: str = NO_DATA_MESSAGE) -> go.Figure:
    """Empty figure carrying a centred message."""
    fig = go.Figure()
    fig.add_annotation(
        text=message,
        xref="paper",
        yref="paper",
        x=0.5,
        y=0.5,
        showarrow=False,
        font=dict(size=14, color="#7F8C8D")
    )
    fig.update_layout(
        title=title,
        template='plotly_white',
        xaxis=dict(visible=False),
        yaxis=dict(visible=False),
        meta={"placeholder": True}
    )
    return fig


def image_figure(png: bytes, title: str) -> go.Figure:
    """Wrap a PNG rendered by the engine in a figure."""
    source = "data:image/png;base64," + base64.b64encode(png).decode("ascii")
    fig = go.Figure(go.Image(source=source, hoverinfo="skip"))
    fig.update_layout(
        title=title,
        template='plotly_white',
        xaxis=dict(visible=False),
        yaxis=dict(visible=False),
        margin=dict(l=10, r=10, t=50, b=10)
    )
    return fig


def is_placeholder(fig: go.Figure) -> bool:
    meta = fig.layout.meta
    return isinstance(meta, dict) and bool(meta.get("placeholder"))


@dataclass(frozen=True)
class ViewPublisher:
    """A named view bound to the one snapshot field it depends on."""
    key: str
    title: str
    requires: str  # "results" or "model"
    render: Callable

    def __call__(self, snapshot: SessionSnapshot, **kwargs):
        return self.render(getattr(snapshot, self.requires), **kwargs)


PUBLISHERS: Dict[str, ViewPublisher] = {}


def publisher(key: str, title: str, requires: str):
    """Register a render function and give it placeholder / error handling."""

    def decorator(func):
        @functools.wraps(func)
        def render(value, **kwargs):
            try:
                if value is None:
                    raise NoDataAvailable(requires)
                return func(value, **kwargs)
            except NoDataAvailable as e:
                logger.debug(f"{key}: {e}")
                return placeholder_figure(title)
            except AnalysisError as e:
                logger.error(f"Failed to render {key}: {e}")
                return placeholder_figure(title, f"Could not render this plot: {e}")
            except Exception as e:
                logger.error(f"Unexpected error rendering {key}: {e}", exc_info=True)
                return placeholder_figure(title, f"Could not render this plot: {e}")

        PUBLISHERS[key] = ViewPublisher(key=key, title=title, requires=requires, render=render)
        return render

    return decorator


def _cluster_order(values: np.ndarray, method: str = 'complete') -> List[int]:
    if values.shape[0] < 2:
        return list(range(values.shape[0]))
    return dendrogram(linkage(values, method=method, metric='euclidean'), no_plot=True)['leaves']


def results_table(
    results: Optional[ResultTable],
    page_size: int = 10,
    table_id: str = 'de-table'
):
    """Paginated, sortable grid of the result table."""
    if results is None:
        return html.Div(NO_DATA_MESSAGE, className="text-muted fst-italic p-4")

    frame = results.frame.reset_index()
    frame.columns = [str(c) for c in frame.columns]
    numeric = frame.select_dtypes(include='number').columns

    columns = []
    for col in frame.columns:
        column = {'name': col, 'id': col}
        if col in numeric:
            column['type'] = 'numeric'
            column['format'] = Format(precision=4, scheme=Scheme.decimal_or_exponent)
        columns.append(column)

    return dash_table.DataTable(
        id=table_id,
        data=frame.astype(object).where(frame.notna(), None).to_dict('records'),
        columns=columns,
        page_size=page_size,
        sort_action='native',
        filter_action='native',
        style_table={'overflowX': 'auto'},
        style_cell={'fontFamily': 'monospace', 'fontSize': 13, 'padding': '4px 8px'},
        style_header={'fontWeight': 'bold'}
    )


@publisher("volcano", "Volcano Plot", requires="results")
def volcano_plot(
    results: ResultTable,
    pvalue_cutoff: float = 0.05,
    lfc_cutoff: float = 1.0,
    top_n_labels: int = 10
) -> go.Figure:
    """
    Create volcano plot (log2 fold change vs -log10 p-value).

    Args:
        results: Result table
        pvalue_cutoff: p-value cutoff for significance
        lfc_cutoff: |log2 fold change| cutoff
        top_n_labels: Number of most significant genes passing both cutoffs to annotate

    Returns:
        Plotly Figure object
    """
    plot_data = results.frame.dropna(subset=['pvalue', 'log2FoldChange']).copy()
    plot_data['gene'] = plot_data.index.astype(str)
    plot_data['-log10p'] = -np.log10(plot_data['pvalue'])

    # p-values of exactly zero
    finite_max = plot_data['-log10p'].replace([np.inf, -np.inf], np.nan).max()
    if pd.isna(finite_max):
        finite_max = 1.0
    plot_data['-log10p'] = plot_data['-log10p'].replace([np.inf], finite_max * 1.1)

    passes_p = plot_data['pvalue'] < pvalue_cutoff
    passes_fc = plot_data['log2FoldChange'].abs() > lfc_cutoff
    plot_data['category'] = np.select(
        [passes_p & passes_fc, passes_p, passes_fc],
        ['p-value and log2 FC', 'p-value', 'Log2 FC'],
        default='NS'
    )

    color_map = {
        'NS': '#95A5A6',
        'Log2 FC': '#27AE60',
        'p-value': '#3498DB',
        'p-value and log2 FC': '#E74C3C'
    }

    fig = go.Figure()
    for category, color in color_map.items():
        subset = plot_data[plot_data['category'] == category]
        fig.add_trace(go.Scatter(
            x=subset['log2FoldChange'],
            y=subset['-log10p'],
            mode='markers',
            name=category,
            marker=dict(color=color, size=6, opacity=0.5 if category == 'NS' else 0.8),
            text=subset['gene'],
            hovertemplate=(
                '<b>%{text}</b><br>' +
                'log2FC: %{x:.2f}<br>' +
                '-log10(p): %{y:.2f}<br>' +
                '<extra></extra>'
            )
        ))

    fig.add_hline(y=-np.log10(pvalue_cutoff), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_cutoff, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_cutoff, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = (
            plot_data[plot_data['category'] == 'p-value and log2 FC']
            .sort_values('-log10p', ascending=False)
            .head(top_n_labels)
        )
        for _, gene in top_genes.iterrows():
            fig.add_annotation(
                x=gene['log2FoldChange'],
                y=gene['-log10p'],
                text=gene['gene'],
                showarrow=True,
                arrowhead=2,
                arrowwidth=1,
                ax=20 if gene['log2FoldChange'] > 0 else -20,
                ay=-20,
                font=dict(size=9),
                bgcolor='rgba(255, 255, 255, 0.8)'
            )

    fig.update_layout(
        title="Volcano Plot",
        xaxis_title="log<sub>2</sub> Fold Change",
        yaxis_title="-log<sub>10</sub> p-value",
        hovermode='closest',
        template='plotly_white',
        legend=dict(x=0.02, y=0.98, bgcolor='rgba(255, 255, 255, 0.8)')
    )

    return fig


@publisher("heatmap", "Heatmap of Top Expressed Genes", requires="model")
def expression_heatmap(model: AnalysisModel, top_n: int = 50) -> go.Figure:
    """
    Heatmap of the most highly expressed genes, row-scaled and clustered.

    Genes are ranked by mean variance-stabilized expression (descending).
    """
    vst = model.normalized()
    top = vst.loc[vst.mean(axis=1).sort_values(ascending=False).index[:top_n]]

    # Row scaling; constant rows become all zeros
    std = top.std(axis=1).replace(0, np.nan)
    scaled = top.sub(top.mean(axis=1), axis=0).div(std, axis=0).fillna(0.0)

    gene_order = _cluster_order(scaled.values)
    sample_order = _cluster_order(scaled.values.T)
    scaled = scaled.iloc[gene_order, sample_order]

    fig = go.Figure(data=go.Heatmap(
        z=scaled.values,
        x=[str(c) for c in scaled.columns],
        y=[str(i) for i in scaled.index],
        colorscale='RdBu_r',
        zmid=0,
        colorbar=dict(title="Row Z-score"),
        hovertemplate='Gene: %{y}<br>Sample: %{x}<br>Z-score: %{z:.2f}<extra></extra>'
    ))

    fig.update_layout(
        title="Heatmap of Top Expressed Genes",
        xaxis_title="Samples",
        yaxis_title="Genes",
        template='plotly_white',
        height=max(400, len(scaled) * 12),
        xaxis=dict(tickangle=-45),
        yaxis=dict(tickfont=dict(size=8))
    )

    return fig


@publisher("pca", "PCA Plot", requires="model")
def pca_plot(model: AnalysisModel, top_n: int = 500) -> go.Figure:
    """
    PCA of samples on the most variable variance-stabilized genes.

    Axis labels report the percentage of variance explained, rounded to whole
    percent.
    """
    vst = model.normalized()
    top = vst.loc[vst.var(axis=1).sort_values(ascending=False).index[:top_n]]

    # Samples as rows
    data = top.T
    n_components = min(data.shape)
    if n_components < 2:
        return placeholder_figure(
            "PCA Plot", "PCA needs at least two samples and two genes."
        )

    pca = PCA(n_components=n_components)
    coords = pca.fit_transform(data.values)
    percent_var = np.round(100 * pca.explained_variance_ratio_).astype(int)

    factor = model.design_factor
    pca_df = pd.DataFrame(coords[:, :2], index=data.index, columns=['PC1', 'PC2'])
    pca_df[factor] = model.metadata.loc[pca_df.index, factor].astype(str).values
    pca_df['sample'] = pca_df.index.astype(str)

    fig = px.scatter(
        pca_df,
        x='PC1',
        y='PC2',
        color=factor,
        hover_name='sample',
        title="PCA Plot",
        labels={
            'PC1': f'PC1: {percent_var[0]}% variance',
            'PC2': f'PC2: {percent_var[1]}% variance'
        }
    )
    fig.update_traces(marker=dict(size=12, line=dict(width=1, color='white')))
    fig.update_layout(template='plotly_white')

    return fig


@publisher("sample_distance", "Sample Distance Heatmap", requires="model")
def sample_distance_heatmap(model: AnalysisModel) -> go.Figure:
    """Euclidean distances between samples, clustered and labelled by sample id."""
    vst = model.normalized()
    samples = [str(c) for c in vst.columns]

    condensed = pdist(vst.T.values, metric='euclidean')
    distances = squareform(condensed)

    if len(samples) > 1:
        order = dendrogram(linkage(condensed, method='complete'), no_plot=True)['leaves']
    else:
        order = list(range(len(samples)))
    ordered = [samples[i] for i in order]
    distances = distances[np.ix_(order, order)]

    fig = go.Figure(data=go.Heatmap(
        z=distances,
        x=ordered,
        y=ordered,
        colorscale='Blues_r',
        colorbar=dict(title="Distance"),
        hovertemplate='%{y} vs %{x}<br>Distance: %{z:.2f}<extra></extra>'
    ))
    fig.update_layout(
        title="Sample Distance Heatmap",
        template='plotly_white',
        xaxis=dict(tickangle=-45),
        yaxis=dict(autorange='reversed')
    )
    return fig


@publisher("ma", "MA Plot", requires="results")
def ma_plot(results: ResultTable) -> go.Figure:
    """The engine's own MA plot for the result set."""
    return image_figure(results.engine.plot_ma(results), "MA Plot")


@publisher("dispersion", "Dispersion Estimates", requires="model")
def dispersion_plot(model: AnalysisModel) -> go.Figure:
    """The engine's own dispersion-estimate plot for the fitted model."""
    return image_figure(model.engine.plot_dispersion(model), "Dispersion Estimates")


PLOT_GRID = [
    ("volcano", "heatmap"),
    ("pca", "sample_distance"),
    ("ma", "dispersion"),
]

"""Descriptive QC visualizations for the merged RNA-seq counts."""

from typing import Dict, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from scipy.spatial.distance import pdist, squareform


def create_library_size_histogram(
    counts_df: pd.DataFrame, sample_groups: Optional[Dict[str, str]] = None, nbins: int = 30
) -> go.Figure:
    """
    Histogram of total counts (library size) per sample.

    Args:
        counts_df: genes × samples DataFrame of raw counts
        sample_groups: Optional sample → group mapping used for colour
        nbins: Number of histogram bins

    Returns:
        Plotly Figure object
    """
    lib_sizes = counts_df.sum(axis=0)
    df = pd.DataFrame({"sample": lib_sizes.index, "library_size": lib_sizes.values})
    df["group"] = [(sample_groups or {}).get(s, "All") for s in df["sample"]]

    fig = px.histogram(
        df, x="library_size", color="group", nbins=nbins, barmode="overlay", opacity=0.7,
        labels={"library_size": "Total Counts"},
    )
    fig.add_vline(
        x=lib_sizes.mean(),
        line_dash="dash",
        line_color="red",
        annotation_text=f"Mean: {lib_sizes.mean():,.0f}",
        annotation_position="top right",
    )
    fig.update_layout(title="Library Size Distribution", yaxis_title="Samples")
    return fig


def create_count_distribution_histogram(
    counts_df: pd.DataFrame, log_transform: bool = True, nbins: int = 60
) -> go.Figure:
    """
    Histogram of per-gene mean counts across samples.

    Args:
        counts_df: genes × samples DataFrame
        log_transform: Apply log2(x+1) transformation (default: True)

    Returns:
        Plotly Figure object
    """
    values = counts_df.mean(axis=1)
    if log_transform:
        values = np.log2(values + 1)

    fig = go.Figure(go.Histogram(x=values.values, nbinsx=nbins, marker_color="steelblue"))
    xlabel = "log₂(mean count + 1)" if log_transform else "Mean count"
    fig.update_layout(
        title="Gene Expression Distribution",
        xaxis_title=xlabel,
        yaxis_title="Genes",
        showlegend=False,
    )
    return fig


def create_sample_distance_heatmap(
    log_normalized_df: pd.DataFrame, sample_groups: Optional[Dict[str, str]] = None
) -> go.Figure:
    """
    Pairwise Euclidean sample-distance heatmap.

    Args:
        log_normalized_df: samples × genes DataFrame (log2 normalized)
        sample_groups: Optional sample → group mapping; samples are ordered by group

    Returns:
        Plotly Figure object
    """
    if log_normalized_df is None or log_normalized_df.empty:
        raise ValueError("Cannot create sample distance heatmap: expression data is empty or None.")

    samples = list(log_normalized_df.index)
    if sample_groups:
        samples = sorted(samples, key=lambda s: (sample_groups.get(s, ""), s))
    data = log_normalized_df.loc[samples]

    dist = squareform(pdist(data.values, metric="euclidean"))

    fig = go.Figure(
        data=go.Heatmap(
            z=dist,
            x=samples,
            y=samples,
            colorscale="Blues_r",
            hovertemplate="Sample X: %{x}<br>Sample Y: %{y}<br>Distance: %{z:.1f}<extra></extra>",
        )
    )
    fig.update_layout(
        title="Sample-to-Sample Distances",
        width=700,
        height=700,
    )
    return fig

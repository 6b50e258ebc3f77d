"""
Report visualizations for the transplant RNA-seq analysis using Plotly.

Provides volcano plot, clustered heatmap, PCA, ranked-pathway bar chart and an
UpSet-style set-intersection plot.
"""

from itertools import combinations
from typing import Dict, List, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import pdist
from sklearn.decomposition import PCA

from gene_classifier import GeneClass

CLASS_COLORS = {
    GeneClass.UPREGULATED.value: "red",
    GeneClass.DOWNREGULATED.value: "blue",
    GeneClass.SMALL_FOLD_CHANGE.value: "orange",
    GeneClass.NOT_SIGNIFICANT.value: "lightgray",
}


def create_volcano_plot(
    results_df: pd.DataFrame, lfc_threshold: float = 1.0, padj_threshold: float = 0.05,
    top_n_labels: int = 10,
) -> go.Figure:
    """
    Create interactive volcano plot from classified DE results.

    Args:
        results_df: DataFrame with columns: gene, log2FoldChange, padj, classification
        lfc_threshold: Log2 fold change threshold line (default: 1.0)
        padj_threshold: Adjusted p-value threshold line (default: 0.05)
        top_n_labels: Number of most significant genes to label

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError(
            "Cannot create volcano plot: results_df is empty or None. "
            "Ensure your differential expression analysis produced results."
        )

    required_cols = ["gene", "log2FoldChange", "padj", "classification"]
    missing = [col for col in required_cols if col not in results_df.columns]
    if missing:
        raise ValueError(
            f"Cannot create volcano plot: missing required columns {missing}. "
            f"Found columns: {', '.join(results_df.columns.tolist()[:8])}."
        )

    # Drop rows with NaN padj (normal for low-count genes filtered by PyDESeq2)
    df = results_df.dropna(subset=["padj", "log2FoldChange"]).copy()
    if df.empty:
        raise ValueError(
            "Cannot create volcano plot: all padj values are NaN. "
            "Ensure differential expression analysis completed successfully."
        )

    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))  # Clip to avoid inf

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_padj",
        color="classification",
        hover_name="gene",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_padj": False,
            "classification": False,
        },
        color_discrete_map=CLASS_COLORS,
        category_orders={"classification": list(CLASS_COLORS)},
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_padj": "-log₁₀(padj)"},
    )

    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = df[df["padj"] < padj_threshold].nsmallest(top_n_labels, "padj")
        if not top_genes.empty:
            fig.add_trace(
                go.Scatter(
                    x=top_genes["log2FoldChange"],
                    y=top_genes["-log10_padj"],
                    mode="text",
                    text=top_genes["gene"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title="Volcano Plot: Post vs Pre Transplant", showlegend=True)
    return fig


def create_clustered_heatmap(
    expression_df: pd.DataFrame,
    sample_groups: Dict[str, str],
    de_results_df: Optional[pd.DataFrame] = None,
    top_n_genes: int = 50,
    z_score: bool = True,
) -> go.Figure:
    """
    Heatmap of the top DE genes with row (gene) clustering.

    Genes are the top N by padj when de_results_df is given and at least 10 of
    them are in the matrix; otherwise the top N by variance.

    Args:
        expression_df: genes × samples (log2 normalized)
        sample_groups: Dict[sample_name, group]; samples are grouped on the x axis
        de_results_df: Optional DE results with 'gene', 'padj' columns
        top_n_genes: Number of genes to display (default: 50)
        z_score: Apply per-gene z-score (default: True)

    Returns:
        Plotly Figure object
    """
    if expression_df is None or expression_df.empty:
        raise ValueError("Cannot create heatmap: expression_df is empty or None.")

    missing_samples = [s for s in expression_df.columns if s not in sample_groups]
    if missing_samples:
        raise ValueError(
            f"Cannot create heatmap: {len(missing_samples)} samples missing from sample_groups. "
            f"Missing: {', '.join(map(str, missing_samples[:3]))}{'...' if len(missing_samples) > 3 else ''}."
        )

    top_genes: List[str] = []
    if de_results_df is not None:
        sig_genes = (
            de_results_df.dropna(subset=["padj"])
            .nsmallest(top_n_genes, "padj")["gene"]
            .tolist()
        )
        top_genes = [g for g in sig_genes if g in expression_df.index]
    if len(top_genes) < 10:
        top_genes = expression_df.var(axis=1).nlargest(top_n_genes).index.tolist()

    plot_data = expression_df.loc[top_genes]

    if z_score:
        std = plot_data.std(axis=1).replace(0, np.nan)
        plot_data = plot_data.sub(plot_data.mean(axis=1), axis=0).div(std, axis=0).fillna(0)

    sample_order = sorted(plot_data.columns, key=lambda s: (sample_groups.get(s, ""), s))
    plot_data = plot_data[sample_order]

    if len(plot_data) > 1:
        linkage_matrix = linkage(pdist(plot_data.values, metric="euclidean"), method="average")
        plot_data = plot_data.iloc[leaves_list(linkage_matrix)]

    fig = go.Figure(
        data=go.Heatmap(
            z=plot_data.values,
            x=plot_data.columns,
            y=plot_data.index,
            colorscale="RdBu_r",
            zmid=0,
            hovertemplate="Gene: %{y}<br>Sample: %{x}<br>Expression: %{z:.2f}<extra></extra>",
        )
    )
    fig.update_layout(
        title=f"Clustered Heatmap (Top {len(plot_data)} Genes)",
        xaxis_title="Samples",
        yaxis_title="Genes",
        height=max(400, len(plot_data) * 10),
    )
    return fig


def create_pca_plot(
    expression_df: pd.DataFrame,
    metadata: pd.DataFrame,
    n_top_genes: int = 500,
) -> go.Figure:
    """
    PCA of samples on the most variable genes.

    Args:
        expression_df: samples × genes (log2 normalized)
        metadata: index = sample id, columns "treatment" (colour) and "condition" (symbol)
        n_top_genes: Number of highest-variance genes used

    Returns:
        Plotly Figure object
    """
    if expression_df is None or expression_df.empty:
        raise ValueError("Cannot create PCA plot: expression_df is empty or None.")
    if expression_df.shape[0] < 3:
        raise ValueError(
            f"Cannot create PCA plot: requires at least 3 samples, but got {expression_df.shape[0]}."
        )

    top = expression_df.var(axis=0).nlargest(min(n_top_genes, expression_df.shape[1])).index
    data = expression_df[top]

    pca = PCA(n_components=2)
    coords = pca.fit_transform(data.values)

    pca_df = pd.DataFrame(coords, columns=["PC1", "PC2"], index=expression_df.index)
    pca_df["treatment"] = metadata.reindex(pca_df.index)["treatment"].astype(str).values
    pca_df["condition"] = metadata.reindex(pca_df.index)["condition"].astype(str).values
    pca_df["sample"] = pca_df.index

    fig = px.scatter(
        pca_df,
        x="PC1",
        y="PC2",
        color="treatment",
        symbol="condition",
        hover_name="sample",
        labels={
            "PC1": f"PC1 ({pca.explained_variance_ratio_[0] * 100:.1f}%)",
            "PC2": f"PC2 ({pca.explained_variance_ratio_[1] * 100:.1f}%)",
        },
    )
    fig.update_layout(title="PCA Plot", showlegend=True)
    return fig


def compute_de_summary(results_df: pd.DataFrame, top_n: int = 10) -> dict:
    """
    Summary counts and top genes from classified DE results.

    Returns:
        Dict with total_genes, tested_genes, one count per class,
        top_up_genes and top_down_genes as (gene, log2FC, padj) tuples
    """
    if results_df is None or results_df.empty:
        raise ValueError("Cannot compute DE summary: results_df is empty or None.")

    counts = results_df["classification"].value_counts()
    up = results_df[results_df["classification"] == GeneClass.UPREGULATED.value]
    down = results_df[results_df["classification"] == GeneClass.DOWNREGULATED.value]

    def as_tuples(df: pd.DataFrame) -> list:
        return [
            (row.gene, float(row.log2FoldChange), float(row.padj))
            for row in df[["gene", "log2FoldChange", "padj"]].itertuples(index=False)
        ]

    summary = {
        "total_genes": len(results_df),
        "tested_genes": int(results_df["padj"].notna().sum()),
        "top_up_genes": as_tuples(up.nlargest(top_n, "log2FoldChange")),
        "top_down_genes": as_tuples(down.nsmallest(top_n, "log2FoldChange")),
    }
    for cls in GeneClass:
        summary[cls.value] = int(counts.get(cls.value, 0))
    return summary


def create_pathway_barplot(
    gsea_df: pd.DataFrame,
    top_n: int = 20,
    padj_threshold: float = 0.05,
    title: str = "Hallmark Pathways (GSEA)",
) -> go.Figure:
    """
    Horizontal bar chart of NES for the top pathways in report order.

    Args:
        gsea_df: DataFrame with columns pathway, nes, pvalue, padj (already sorted)
        top_n: Number of pathways to display
        padj_threshold: Bars with padj below this are drawn solid

    Returns:
        Plotly Figure object
    """
    if gsea_df is None or gsea_df.empty:
        fig = go.Figure()
        fig.update_layout(
            title=title,
            annotations=[dict(
                text="No enrichment results to display",
                xref="paper", yref="paper",
                x=0.5, y=0.5, showarrow=False, font=dict(size=16)
            )]
        )
        return fig

    df = gsea_df.head(top_n).iloc[::-1]  # most significant at top
    labels = df["pathway"].astype(str).str.replace("HALLMARK_", "", regex=False)
    colors = [
        ("#e74c3c" if nes > 0 else "#3498db") if padj < padj_threshold else "lightgray"
        for nes, padj in zip(df["nes"], df["padj"].fillna(1.0))
    ]

    fig = go.Figure(data=[
        go.Bar(
            x=df["nes"],
            y=labels,
            orientation="h",
            marker_color=colors,
            customdata=np.stack([df["pvalue"], df["padj"]], axis=-1),
            hovertemplate=(
                "<b>%{y}</b><br>NES: %{x:.2f}<br>"
                "p: %{customdata[0]:.2e}<br>FDR: %{customdata[1]:.2e}<extra></extra>"
            ),
        )
    ])
    fig.add_vline(x=0, line_color="black", line_width=1)
    fig.update_layout(
        title=title,
        xaxis_title="Normalized Enrichment Score",
        yaxis_title="",
        height=max(400, len(df) * 25 + 100),
        margin=dict(l=250),
        showlegend=False,
    )
    return fig


def create_upset_plot(
    gene_sets: Dict[str, set],
    title: str = "Significant Gene Overlap Across Pathways",
) -> go.Figure:
    """
    UpSet-style set-intersection plot.

    Bars show the size of each exclusive intersection (genes in exactly that
    combination of sets); the dot matrix below marks which sets take part.

    Args:
        gene_sets: Dict mapping set name → set of gene names (at least 2 sets)
        title: Plot title

    Returns:
        Plotly Figure object
    """
    set_names = list(gene_sets.keys())
    sets = [set(gene_sets[k]) for k in set_names]
    n = len(set_names)

    if n < 2:
        raise ValueError("At least 2 gene sets are required for an intersection plot.")

    all_elements = set().union(*sets)

    intersections = []
    for r in range(1, n + 1):
        for combo in combinations(range(n), r):
            combo_set = set(all_elements)
            for i in range(n):
                if i in combo:
                    combo_set &= sets[i]
                else:
                    combo_set -= sets[i]
            if combo_set:
                intersections.append((combo, len(combo_set)))

    intersections.sort(key=lambda x: (-x[1], x[0]))

    combo_labels = [" & ".join(set_names[i] for i in combo) for combo, _ in intersections]
    sizes = [size for _, size in intersections]

    fig = make_subplots(
        rows=2, cols=1, row_heights=[0.65, 0.35],
        shared_xaxes=True, vertical_spacing=0.02,
    )
    fig.add_trace(
        go.Bar(
            x=list(range(len(sizes))),
            y=sizes,
            marker_color="steelblue",
            hovertemplate="<b>%{customdata}</b><br>Count: %{y}<extra></extra>",
            customdata=combo_labels,
            showlegend=False,
        ),
        row=1, col=1,
    )

    for row_idx in range(n):
        member = [col for col, (combo, _) in enumerate(intersections) if row_idx in combo]
        absent = [col for col, (combo, _) in enumerate(intersections) if row_idx not in combo]
        for xs, color in ((member, "steelblue"), (absent, "lightgray")):
            fig.add_trace(
                go.Scatter(
                    x=xs, y=[row_idx] * len(xs), mode="markers",
                    marker=dict(size=10, color=color),
                    showlegend=False, hoverinfo="skip",
                ),
                row=2, col=1,
            )

    for col, (combo, _) in enumerate(intersections):
        if len(combo) > 1:
            fig.add_trace(
                go.Scatter(
                    x=[col, col], y=[min(combo), max(combo)], mode="lines",
                    line=dict(color="steelblue", width=2),
                    showlegend=False, hoverinfo="skip",
                ),
                row=2, col=1,
            )

    fig.update_layout(
        title=title,
        height=400 + n * 30,
        width=max(500, len(intersections) * 45 + 150),
    )
    fig.update_yaxes(title_text="Intersection Size", row=1, col=1)
    fig.update_yaxes(tickvals=list(range(n)), ticktext=set_names, row=2, col=1)
    fig.update_xaxes(visible=False, row=1, col=1)
    fig.update_xaxes(visible=False, row=2, col=1)
    return fig


def pathway_gene_sets_for_upset(
    enrichment_df: pd.DataFrame,
    gene_sets: Dict[str, List[str]],
    selected_genes: List[str],
    top_n: int = 5,
) -> Dict[str, set]:
    """Significant genes belonging to each of the top_n pathways (empty intersections dropped)."""
    selected = set(selected_genes)
    result = {}
    for name in enrichment_df["pathway"].head(top_n):
        members = set(gene_sets.get(name, [])) & selected
        if members:
            result[str(name).replace("HALLMARK_", "")] = members
    return result

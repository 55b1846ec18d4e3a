"""
Pytest configuration and fixtures for the saliva differential expression tests.
"""

from pathlib import Path
import pytest
import pandas as pd
import numpy as np
import yaml


N_GENES = 20
SIGNAL_GENES = 4  # the first genes are up in Final samples
FOLD = 8.0


def simulate_counts(columns, up_mask, n_genes=N_GENES, seed=0):
    """
    Negative-binomial counts with a clear fold change in the first genes.

    Args:
        columns: Sample labels
        up_mask: Boolean per sample; True where signal genes are FOLD higher
    """
    rng = np.random.default_rng(seed)
    base = np.linspace(200, 2000, n_genes)
    mu = np.tile(base[:, None], (1, len(columns)))
    mu[:SIGNAL_GENES, np.asarray(up_mask)] *= FOLD
    size = 20.0
    counts = rng.negative_binomial(size, size / (size + mu))
    genes = [f"GENE{i + 1:03d}" for i in range(n_genes)]
    return pd.DataFrame(counts, index=genes, columns=list(columns))


# ============================================================================
# Toy Timepoint Study (20 genes × 6 samples)
# ============================================================================


@pytest.fixture
def toy_metadata():
    """3 Initial + 3 Final saliva samples indexed by composite code."""
    records = []
    for i, timepoint in enumerate(["Initial"] * 3 + ["Final"] * 3):
        records.append(
            {
                "SampleID": f"S{i + 1:02d}",
                "Product": "B",
                "Tissue": "Saliva",
                "Timepoint": timepoint,
                "Fortification": "Fortified" if i % 2 else "Non-Fortified",
            }
        )
    df = pd.DataFrame(records)
    df.index = df["SampleID"] + "_B_Saliva_" + df["Timepoint"]
    df.index.name = "sample_code"
    for col in ["SampleID", "Product", "Tissue", "Timepoint", "Fortification"]:
        df[col] = df[col].astype("category")
    return df


@pytest.fixture
def toy_counts(toy_metadata):
    """Genes × samples counts; GENE001-GENE004 are 8x higher in Final."""
    up = (toy_metadata["Timepoint"] == "Final").to_numpy()
    return simulate_counts(toy_metadata.index, up)


@pytest.fixture
def de_results_df():
    """DESeq2-style result table with a few undefined adjusted p-values."""
    genes = [f"GENE{i + 1:03d}" for i in range(8)]
    df = pd.DataFrame(
        {
            "baseMean": [500.0, 120.0, 80.0, 1500.0, 3.0, 900.0, 40.0, 250.0],
            "log2FoldChange": [3.1, -2.5, 0.4, 1.2, 5.0, -0.1, 0.8, -4.2],
            "lfcSE": [0.3, 0.4, 0.5, 0.2, 2.0, 0.3, 0.6, 0.5],
            "stat": [10.3, -6.2, 0.8, 6.0, 2.5, -0.3, 1.3, -8.4],
            "pvalue": [1e-20, 5e-10, 0.42, 2e-9, 0.01, 0.76, 0.19, 4e-17],
            "padj": [2e-19, 0.07, 0.61, 0.03, np.nan, 0.81, np.nan, 0.001],
        },
        index=pd.Index(genes, name="gene_id"),
    )
    return df


# ============================================================================
# On-disk Study Fixtures
# ============================================================================


STUDY_SAMPLES = [
    # SampleID, Product, Tissue, Timepoint, Fortification
    ("S01", "A", "Saliva", "Initial", "Non-Fortified"),
    ("S02", "A", "Saliva", "Initial", "Non-Fortified"),
    ("S03", "A", "Saliva", "Final", "Non-Fortified"),
    ("S04", "A", "Saliva", "Final", "Non-Fortified"),
    ("S05", "B", "Saliva", "Initial", "Fortified"),
    ("S06", "B", "Saliva", "Initial", "Fortified"),
    ("S07", "B", "Saliva", "Final", "Fortified"),
    ("S08", "B", "Saliva", "Final", "Fortified"),
    ("P01", "B", "Plasma", "Final", "Fortified"),
]


def transcript_table(n_genes=N_GENES):
    """tx2gene for the study: odd genes have one transcript, even genes two."""
    rows = []
    for g in range(n_genes):
        gene = f"GENE{g + 1:03d}"
        rows.append((f"TX{g + 1:03d}a", gene))
        if g % 2:
            rows.append((f"TX{g + 1:03d}b", gene))
    return pd.DataFrame(rows, columns=["transcript_id", "gene_id"])


def write_quant_sf(path, reads, lengths):
    """Write one Salmon quant.sf from transcript read counts and lengths."""
    reads = pd.Series(reads, dtype=float)
    lengths = pd.Series(lengths, dtype=float).loc[reads.index]
    effective = lengths - 150.0
    rate = reads / effective
    tpm = rate / rate.sum() * 1e6
    df = pd.DataFrame(
        {
            "Name": reads.index,
            "Length": lengths.astype(int).to_numpy(),
            "EffectiveLength": effective.to_numpy(),
            "TPM": tpm.to_numpy(),
            "NumReads": reads.to_numpy(),
        }
    )
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture
def study_dir(tmp_path):
    """
    A complete study on disk: metadata.tsv, names.tsv, tx2gene.tsv and
    salmon/<SampleID>/quant.sf with versioned transcript ids.
    """
    meta = pd.DataFrame(
        STUDY_SAMPLES, columns=["SampleID", "Product", "Tissue", "Timepoint", "Fortification"]
    )
    meta.to_csv(tmp_path / "metadata.tsv", sep="\t", index=False)
    pd.DataFrame(
        {"SampleID": meta["SampleID"], "Description": [f"Subject {s}" for s in meta["SampleID"]]}
    ).to_csv(tmp_path / "names.tsv", sep="\t", index=False)

    tx2gene = transcript_table()
    tx2gene.to_csv(tmp_path / "tx2gene.tsv", sep="\t", index=False)

    gene_counts = simulate_counts(meta["SampleID"], (meta["Timepoint"] == "Final").to_numpy())
    lengths = pd.Series(
        {f"{tx}.1": 1000.0 + 37.0 * i for i, tx in enumerate(tx2gene["transcript_id"])}
    )
    for sample in meta["SampleID"]:
        reads = {}
        for gene, txs in tx2gene.groupby("gene_id")["transcript_id"]:
            total = float(gene_counts.loc[gene, sample])
            shares = [1.0] if len(txs) == 1 else [0.7, 0.3]
            for tx, share in zip(txs, shares):
                reads[f"{tx}.1"] = total * share
        write_quant_sf(tmp_path / "salmon" / sample / "quant.sf", reads, lengths)
    return tmp_path


@pytest.fixture
def study_config_dict():
    """Configuration content (relative to study_dir) with one timepoint and one group analysis."""
    return {
        "metadata": "metadata.tsv",
        "sample_names": "names.tsv",
        "quant_dir": "salmon",
        "output_dir": "results",
        "annotation": {
            "build": "toy",
            "tx2gene": "tx2gene.tsv",
            "cache_dir": "cache",
            "ignore_tx_version": True,
        },
        "n_cpus": 1,
        "padj_thresholds": [0.1, 0.05],
        "ma_plot": {"enabled": True, "format": "html"},
        "analyses": [
            {
                "name": "timepoint",
                "design": "~Timepoint",
                "reference_levels": {"Timepoint": "Initial"},
                "contrasts": [["Timepoint", "Final", "Initial"]],
                "shrink": ["Timepoint[T.Final]"],
            },
            {
                "name": "product_by_timepoint",
                "interaction": ["Product", "Timepoint"],
                "contrasts": [
                    ["group", "B.Final", "B.Initial"],
                    ["group", "C.Final", "C.Initial"],
                ],
            },
        ],
    }


@pytest.fixture
def study_config_file(study_dir, study_config_dict):
    path = study_dir / "analysis.yaml"
    path.write_text(yaml.safe_dump(study_config_dict))
    return path

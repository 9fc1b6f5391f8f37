from __future__ import annotations

from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse as sp

from anchormap.core.types import COUNTS
from anchormap.errors import FormatError, MissingFileError, SchemaError
from anchormap.loaders import (
    dataset_from_matrix,
    load_10x_directory,
    load_count_matrix,
    load_h5ad,
    load_vizgen,
    spatial_dataset_from_tables,
)


def _write_10x(directory: Path, counts_fxs: np.ndarray, genes: list[str], barcodes: list[str]) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    scipy.io.mmwrite(str(directory / "matrix.mtx"), sp.coo_matrix(counts_fxs))
    pd.DataFrame(
        {"id": [f"ENSG{i:05d}" for i in range(len(genes))], "symbol": genes, "type": "Gene Expression"}
    ).to_csv(directory / "features.tsv", sep="\t", header=False, index=False)
    pd.Series(barcodes).to_csv(directory / "barcodes.tsv", sep="\t", header=False, index=False)


def test_dataset_from_matrix_keeps_every_sample():
    counts = np.array([[1, 0, 3], [0, 2, 0]], dtype=float)  # 2 features x 3 samples
    ds = dataset_from_matrix(counts, ["g1", "g2"], ["a", "b", "c"], name="ref")
    assert ds.shape == (3, 2)
    assert list(ds.sample_ids) == ["a", "b", "c"]
    np.testing.assert_allclose(ds.layer(COUNTS).toarray(), counts.T)
    assert ds.obs["total_counts"].tolist() == [1.0, 2.0, 3.0]
    assert ds.obs["n_features"].tolist() == [1, 1, 1]


def test_dataset_from_matrix_samples_by_features_orientation():
    counts = np.ones((4, 2))
    ds = dataset_from_matrix(
        counts, ["g1", "g2"], ["a", "b", "c", "d"], orientation="samples_by_features"
    )
    assert ds.shape == (4, 2)


def test_dimension_mismatch_is_format_error():
    with pytest.raises(FormatError, match="2 x 3"):
        dataset_from_matrix(np.ones((2, 3)), ["g1", "g2"], ["a", "b"], name="ref")


def test_duplicate_barcodes_are_format_error():
    with pytest.raises(FormatError, match="unique"):
        dataset_from_matrix(np.ones((2, 2)), ["g1", "g2"], ["a", "a"])


def test_negative_counts_are_rejected():
    with pytest.raises(FormatError, match="non-negative"):
        dataset_from_matrix(np.array([[1.0, -1.0]]), ["g1"], ["a", "b"])


def test_load_10x_directory_uses_symbols(tmp_path: Path):
    counts = np.array([[0, 1, 2], [3, 0, 0], [1, 1, 1], [0, 0, 4]], dtype=float)
    _write_10x(tmp_path / "ref", counts, ["Actb", "Gapdh", "Cd3e", "Cd19"], ["c1", "c2", "c3"])
    ds = load_10x_directory(tmp_path / "ref", name="ref")
    assert ds.name == "ref"
    assert list(ds.feature_ids) == ["Actb", "Gapdh", "Cd3e", "Cd19"]
    assert list(ds.sample_ids) == ["c1", "c2", "c3"]
    np.testing.assert_allclose(ds.layer(COUNTS).toarray(), counts.T)


def test_duplicate_symbols_are_suffixed_with_warning(tmp_path: Path):
    counts = np.eye(3)
    _write_10x(tmp_path / "ref", counts, ["Actb", "Actb", "Cd3e"], ["c1", "c2", "c3"])
    with pytest.warns(RuntimeWarning, match="Duplicate names"):
        ds = load_10x_directory(tmp_path / "ref")
    assert list(ds.feature_ids) == ["Actb", "Actb-1", "Cd3e"]


def test_missing_matrix_file_is_reported(tmp_path: Path):
    with pytest.raises(MissingFileError, match="count matrix"):
        load_count_matrix(tmp_path / "matrix.mtx", tmp_path / "f.tsv", tmp_path / "b.tsv")
    tmp_path.joinpath("empty").mkdir()
    with pytest.raises(MissingFileError, match="matrix file"):
        load_10x_directory(tmp_path / "empty")


def test_barcode_count_mismatch_is_format_error(tmp_path: Path):
    _write_10x(tmp_path / "ref", np.ones((2, 3)), ["g1", "g2"], ["c1", "c2"])
    with pytest.raises(FormatError):
        load_10x_directory(tmp_path / "ref")


def test_spatial_tables_are_aligned_to_count_order():
    counts = pd.DataFrame({"g1": [1, 2, 3], "g2": [0, 1, 0]}, index=["a", "b", "c"])
    coords = pd.DataFrame({"x": [30.0, 10.0, 20.0], "y": [3.0, 1.0, 2.0]}, index=["c", "a", "b"])
    meta = pd.DataFrame({"volume": [300.0, 100.0, 200.0]}, index=["c", "a", "b"])
    ds = spatial_dataset_from_tables(counts, coords, meta, name="q")
    np.testing.assert_allclose(ds.spatial, [[10.0, 1.0], [20.0, 2.0], [30.0, 3.0]])
    assert ds.obs["volume"].tolist() == [100.0, 200.0, 300.0]


def test_spatial_tables_with_different_samples_raise_schema_error():
    counts = pd.DataFrame({"g1": [1, 2, 3]}, index=["a", "b", "c"])
    coords = pd.DataFrame({"x": [0.0, 1.0], "y": [0.0, 1.0]}, index=["a", "b"])
    with pytest.raises(SchemaError, match="1 only in counts, 0 only in coordinates"):
        spatial_dataset_from_tables(counts, coords)


def test_load_vizgen_reads_centroids_and_drops_blank_probes(tmp_path: Path):
    region = tmp_path / "region_0"
    region.mkdir()
    pd.DataFrame(
        {"Gad1": [5, 0, 2], "Slc17a7": [0, 9, 1], "Blank-1": [1, 0, 0]},
        index=pd.Index(["101", "102", "103"], name="cell"),
    ).to_csv(region / "cell_by_gene.csv")
    pd.DataFrame(
        {
            "fov": [0, 0, 1],
            "volume": [150.0, 900.0, 60.0],
            "center_x": [1.0, 2.0, 3.0],
            "center_y": [4.0, 5.0, 6.0],
        },
        index=pd.Index(["103", "101", "102"], name="cell"),
    ).to_csv(region / "cell_metadata.csv")

    ds = load_vizgen(region, name="merscope")
    assert list(ds.feature_ids) == ["Gad1", "Slc17a7"]
    assert list(ds.sample_ids) == ["101", "102", "103"]
    np.testing.assert_allclose(ds.spatial, [[2.0, 5.0], [3.0, 6.0], [1.0, 4.0]])
    assert ds.obs["volume"].tolist() == [900.0, 60.0, 150.0]
    assert ds.obs["total_counts"].tolist() == [5.0, 9.0, 3.0]
    np.testing.assert_allclose(ds.obs["log_umi"], np.log10([5.0, 9.0, 3.0]))


def test_load_vizgen_requires_centroid_columns(tmp_path: Path):
    region = tmp_path / "region_0"
    region.mkdir()
    pd.DataFrame({"Gad1": [1]}, index=["1"]).to_csv(region / "cell_by_gene.csv")
    pd.DataFrame({"volume": [1.0]}, index=["1"]).to_csv(region / "cell_metadata.csv")
    with pytest.raises(SchemaError, match="center_x"):
        load_vizgen(region)
    with pytest.raises(MissingFileError):
        load_vizgen(tmp_path / "nope")


def test_load_h5ad_prefers_symbol_column(tmp_path: Path):
    adata = ad.AnnData(
        X=sp.csr_matrix(np.array([[1.0, 0.0], [2.0, 3.0], [0.0, 1.0]])),
        obs=pd.DataFrame(index=["c1", "c2", "c3"]),
        var=pd.DataFrame({"gene_symbol": ["Gad1", "Slc17a7"]}, index=["ENSG1", "ENSG2"]),
    )
    path = tmp_path / "ref.h5ad"
    adata.write_h5ad(path)
    ds = load_h5ad(path, name="ref")
    assert list(ds.feature_ids) == ["Gad1", "Slc17a7"]
    assert ds.obs["total_counts"].tolist() == [1.0, 5.0, 1.0]
    with pytest.raises(MissingFileError):
        load_h5ad(tmp_path / "absent.h5ad")


def test_empty_barcode_file_names_dataset_and_file(tmp_path: Path):
    _write_10x(tmp_path / "ref", np.ones((2, 2)), ["g1", "g2"], ["c1", "c2"])
    (tmp_path / "ref" / "barcodes.tsv").write_text("", encoding="utf-8")
    with pytest.raises(FormatError, match="Dataset 'ref': barcode list is empty"):
        load_10x_directory(tmp_path / "ref", name="ref")

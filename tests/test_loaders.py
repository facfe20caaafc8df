import numpy as np
import pytest

from gwaskin.data import loaders
from gwaskin.utils.data_types import GenotypeMatrix
from gwaskin.utils.exceptions import AlignmentError


def test_detect_file_format() -> None:
    assert loaders.detect_file_format("geno.csv") == "csv"
    assert loaders.detect_file_format("geno.CSV.gz") == "csv"
    assert loaders.detect_file_format("geno.txt") == "tsv"
    assert loaders.detect_file_format("geno.tsv") == "tsv"
    with pytest.raises(ValueError, match="Unsupported file format"):
        loaders.detect_file_format("geno.vcf")


def test_load_genotype_csv_keeps_missing_calls(tmp_path) -> None:
    csv_path = tmp_path / "geno.csv"
    csv_path.write_text(
        "ID,snp1,snp2,snp3\n"
        "I1,0,1,NA\n"
        "I2,1,,2\n"
        "I3,2,2,0\n",
        encoding="utf-8",
    )

    genotype, individual_ids, geno_map = loaders.load_genotype_file(csv_path)

    assert individual_ids == ["I1", "I2", "I3"]
    assert isinstance(genotype, GenotypeMatrix)
    assert genotype.sample_ids == ["I1", "I2", "I3"]
    np.testing.assert_array_equal(
        genotype.to_numpy(), np.array([[0, 1, -9], [1, -9, 2], [2, 2, 0]], dtype=np.int8)
    )
    assert list(geno_map.snp_ids) == ["snp1", "snp2", "snp3"]
    assert geno_map.positions.tolist() == [1, 2, 3]


def test_load_genotype_numeric_detects_separator(tmp_path) -> None:
    num_path = tmp_path / "geno_numeric.txt"
    num_path.write_text(
        "ID\tsnp1\tsnp2\n"
        "A\t0\t1\n"
        "B\t1\t2\n",
        encoding="utf-8",
    )

    genotype, individual_ids, geno_map = loaders.load_genotype_file(num_path)

    assert individual_ids == ["A", "B"]
    np.testing.assert_array_equal(genotype[:, :], np.array([[0, 1], [1, 2]], dtype=np.int8))
    assert list(geno_map.snp_ids) == ["snp1", "snp2"]


def test_load_genotype_rejects_duplicates_and_bad_dosages(tmp_path) -> None:
    dup_path = tmp_path / "dup.csv"
    dup_path.write_text("ID,snp1\nI1,0\nI1,1\n", encoding="utf-8")
    with pytest.raises(AlignmentError):
        loaders.load_genotype_file(dup_path)

    bad_path = tmp_path / "bad.csv"
    bad_path.write_text("ID,snp1\nI1,0\nI2,3\n", encoding="utf-8")
    with pytest.raises(ValueError, match="0, 1, 2 or missing"):
        loaders.load_genotype_file(bad_path)

    with pytest.raises(FileNotFoundError):
        loaders.load_genotype_file(tmp_path / "absent.csv")


def test_load_phenotype_deduplicates_by_mean(tmp_path) -> None:
    path = tmp_path / "phe.csv"
    path.write_text(
        "ID,Height,Label\n"
        "A,1.0,x\n"
        "B,NA,y\n"
        "A,3.0,z\n",
        encoding="utf-8",
    )

    with pytest.warns(UserWarning, match="duplicated phenotype records"):
        df = loaders.load_phenotype_file(path)

    assert list(df.columns) == ["ID", "Height"]
    assert df.set_index("ID").loc["A", "Height"] == pytest.approx(2.0)
    assert np.isnan(df.set_index("ID").loc["B", "Height"])

    phenotype = loaders.phenotype_for_trait(df, "Height")
    assert list(phenotype.ids) == ["A", "B"]
    with pytest.raises(ValueError, match="not found"):
        loaders.phenotype_for_trait(df, "Weight")


def test_load_phenotype_without_id_column_uses_first(tmp_path) -> None:
    path = tmp_path / "phe.tsv"
    path.write_text("Taxa\tYield\nA\t2.5\nB\t3.5\n", encoding="utf-8")

    with pytest.warns(UserWarning, match="using first column 'Taxa'"):
        df = loaders.load_phenotype_file(path)

    assert df["ID"].tolist() == ["A", "B"]
    assert df["Yield"].tolist() == [2.5, 3.5]


def test_load_map_standardises_column_names(tmp_path) -> None:
    path = tmp_path / "map.csv"
    path.write_text("marker,Chr,Pos\nm1,1,100\nm2,2,200\n", encoding="utf-8")

    geno_map = loaders.load_map_file(path)

    assert list(geno_map.snp_ids) == ["m1", "m2"]
    assert geno_map.chromosomes.tolist() == [1, 2]
    assert geno_map.positions.tolist() == [100, 200]


def test_non_numeric_entries_warn_with_count(tmp_path) -> None:
    phe_path = tmp_path / "phe.csv"
    phe_path.write_text("ID,Height,Notes\nA,1.0,tall\nB,1..2,2x\nC,NA,short\n", encoding="utf-8")
    with pytest.warns(UserWarning, match="1 non-numeric phenotype entries"):
        df = loaders.load_phenotype_file(phe_path)
    assert list(df.columns) == ["ID", "Height"]
    assert np.isnan(df.loc[1, "Height"])
    assert np.isnan(df.loc[2, "Height"])

    geno_path = tmp_path / "geno.csv"
    geno_path.write_text("ID,snp1,snp2\nI1,0,AA\nI2,1,2\nI3,2,0\n", encoding="utf-8")
    with pytest.warns(UserWarning, match="1 non-numeric genotype calls"):
        genotype, _, _ = loaders.load_genotype_file(geno_path)
    assert genotype.to_numpy()[0, 1] == -9

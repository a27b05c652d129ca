"""
Tests for manifest loading (shipment lists, PXK slips) and the customer code map.
"""

import json

import pandas as pd
import pytest

from identity import make_line_key
from manifest_loader import (
    CustomerCodeMap,
    ManifestSource,
    PxkManifest,
    ShipmentManifest,
    build_expected_lines,
    filter_pxk_rows,
    read_table,
    standardize_columns,
)
from models import ExpectedLine


def write_csv(path, data):
    pd.DataFrame(data).to_csv(path, index=False)
    return path


class TestReadTable:

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="Could not read the manifest file"):
            read_table(tmp_path / "missing.xlsx")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("Shipment,Material\n", encoding="utf-8")
        with pytest.raises(ValueError, match="empty"):
            read_table(path)

    def test_keeps_leading_zeros(self, tmp_path):
        path = write_csv(tmp_path / "m.csv", {"Shipment": ["0001"], "Material": ["MAT01"]})
        assert read_table(path)["Shipment"].iloc[0] == "0001"

    def test_excel(self, tmp_path):
        path = tmp_path / "m.xlsx"
        pd.DataFrame({"Shipment": ["0001"], "Material": ["MAT01"]}).to_excel(path, index=False)
        assert len(read_table(path)) == 1


class TestStandardizeColumns:

    def test_aliases(self):
        df = pd.DataFrame(columns=["shipmentCode", "Mã hàng", "PO Number", "Qty", "CTN"])
        assert list(standardize_columns(df).columns) == ["Shipment", "Material", "PO", "Quantity", "Cartons"]

    def test_mapping_overrides_aliases(self):
        df = pd.DataFrame(columns=["Ship No", "Item", "Qty"])
        renamed = standardize_columns(df, {"Shipment": "Ship No", "Material": "Item"})
        assert list(renamed.columns) == ["Shipment", "Material", "Quantity"]


class TestBuildExpectedLines:

    def test_rows_summed_per_key(self):
        df = pd.DataFrame({
            "Shipment": ["0001", "0001", "0001"],
            "Material": ["mat01", "MAT01 ", "MAT02"],
            "PO": ["po1", "PO1", "PO1"],
            "Quantity": ["10", "5", "1,200"],
            "Cartons": ["", "", "3"],
        })

        lines = build_expected_lines(df)

        assert len(lines) == 2
        assert lines[0].line_key == make_line_key("0001", "MAT01", "PO1")
        assert lines[0].expected_quantity == 15
        assert lines[0].expected_cartons is None
        assert lines[1].expected_quantity == 1200
        assert lines[1].expected_cartons == 3

    def test_shipment_from_argument(self):
        df = pd.DataFrame({"Material": ["MAT01"], "Quantity": ["4"]})
        lines = build_expected_lines(df, shipment_code="0007")
        assert lines[0].shipment_code == "0007"
        assert lines[0].po_or_pallet_key == ""

    def test_missing_material_column(self):
        with pytest.raises(ValueError, match="Material"):
            build_expected_lines(pd.DataFrame({"Shipment": ["0001"]}))

    def test_missing_shipment(self):
        with pytest.raises(ValueError, match="Shipment"):
            build_expected_lines(pd.DataFrame({"Material": ["MAT01"]}))

    def test_blank_rows_dropped(self):
        df = pd.DataFrame({"Shipment": ["0001", "0001"], "Material": ["MAT01", ""], "Quantity": ["1", "2"]})
        assert len(build_expected_lines(df)) == 1


class TestManifestSources:

    def test_manifest_source_by_scope(self):
        source = ManifestSource([
            ExpectedLine("0001", "MAT01", "PO1", 15),
            ExpectedLine("0002", "MAT01", "PO1", 5),
        ])
        assert source.scopes() == ["0001", "0002"]
        assert len(source) == 2
        assert len(source.expected_lines_for(" 0001")) == 1
        assert source.expected_lines_for("0009") == []

    def test_shipment_manifest_from_csv(self, tmp_path):
        path = write_csv(tmp_path / "shipments.csv", {
            "Shipment": ["0001", "0001", "0002"],
            "Material Code": ["MAT01", "MAT02", "MAT01"],
            "PO": ["PO1", "PO1", "PO7"],
            "Quantity": ["15", "20", "8"],
        })

        manifest = ShipmentManifest.from_file(path)

        assert manifest.scopes() == ["0001", "0002"]
        assert [line.material_code for line in manifest.expected_lines_for("0001")] == ["MAT01", "MAT02"]

    def test_pxk_filter(self):
        df = pd.DataFrame({
            "Material": ["NVL01", "R1234", "B033X", "NVL02", "NVL03"],
            "Warehouse": ["NVL", "NVL", "NVL", "TP", "00"],
        })
        assert list(filter_pxk_rows(df)["Material"]) == ["NVL01", "NVL03"]

    def test_pxk_manifest_scoped_by_lsx(self, tmp_path):
        path = write_csv(tmp_path / "pxk.csv", {
            "LSX": ["KZLSX0326/0012", "KZLSX0326/0012", "KZLSX0326/0013"],
            "Material": ["NVL01", "R0001", "NVL02"],
            "Qty": ["50", "3", "7"],
            "Mã kho": ["NVL", "NVL", "NVL_E31"],
        })

        manifest = PxkManifest.from_file(path)

        assert manifest.scopes() == ["0326/0012", "0326/0013"]
        lines = manifest.expected_lines_for("LSX 0326-0012")
        assert [(line.material_code, line.expected_quantity) for line in lines] == [("NVL01", 50)]


class TestCustomerCodeMap:

    def test_missing_file_is_empty(self, tmp_path):
        assert CustomerCodeMap(tmp_path / "codes.json").get_map() == {}

    def test_set_lookup_remove(self, tmp_path):
        path = tmp_path / "codes.json"
        code_map = CustomerCodeMap(path)

        code_map.set_mapping(" cust01", "mat01")

        assert code_map.lookup("CUST01") == "MAT01"
        assert json.loads(path.read_text(encoding="utf-8")) == {"CUST01": "MAT01"}
        assert CustomerCodeMap(path).lookup("cust01") == "MAT01"

        assert code_map.remove_mapping("cust01")
        assert not code_map.remove_mapping("cust01")
        assert code_map.lookup("CUST01") is None

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "codes.json"
        path.write_text("{oops", encoding="utf-8")
        assert CustomerCodeMap(path).get_map() == {}

    def test_save_replacement_map(self, tmp_path):
        code_map = CustomerCodeMap(tmp_path / "codes.json")
        code_map.save_map({"a1": "m1"})
        assert code_map.get_map() == {"A1": "M1"}

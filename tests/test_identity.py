"""
Unit tests for src/identity.py: raw scan normalization.

Tests cover:
- Employee badge validation (ASP + 4 digits, case, mis-keyed prefix, QR payload)
- Shipment and LSX normalization
- Line key construction (order-stable, collision-free)
- Goods label parsing (pipe format, QTY+CODE labels, customer code mapping)
- Malformed input never raises
"""

import pytest

from identity import (
    KEY_DELIMITER,
    display_line_key,
    make_line_key,
    normalize_employee_id,
    normalize_line_key,
    normalize_shipment_code,
    parse_goods_scan,
    parse_quantity,
    split_line_key,
)


# ============================================================================
# Employee badges
# ============================================================================

class TestNormalizeEmployeeId:

    def test_valid_code(self):
        result = normalize_employee_id("ASP1234")
        assert result.valid
        assert result.id == "ASP1234"
        assert result.error is None

    def test_lowercase_is_canonicalized(self):
        result = normalize_employee_id("asp1234")
        assert result.valid
        assert result.id == "ASP1234"

    def test_three_digits_invalid(self):
        result = normalize_employee_id("ASP123")
        assert not result.valid
        assert "ASP123" in result.error

    def test_wrong_prefix_invalid(self):
        result = normalize_employee_id("XYZ1234")
        assert not result.valid
        assert result.error

    def test_surrounding_whitespace_ignored(self):
        assert normalize_employee_id("  ASP0001 \n").id == "ASP0001"

    def test_miskeyed_prefix_is_repaired(self):
        result = normalize_employee_id("ÁP1234")
        assert result.valid
        assert result.id == "ASP1234"

    def test_badge_qr_payload(self):
        result = normalize_employee_id("ASP1752-NGUYEN VAN A-Kho-19/06/2023")
        assert result.valid
        assert result.id == "ASP1752"
        assert result.name_hint == "NGUYEN VAN A"

    def test_only_first_seven_characters_count(self):
        result = normalize_employee_id("ASP12345")
        assert result.valid
        assert result.id == "ASP1234"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_input(self, raw):
        result = normalize_employee_id(raw)
        assert not result.valid
        assert result.error


# ============================================================================
# Shipment codes
# ============================================================================

class TestNormalizeShipmentCode:

    def test_uppercase_and_strip_spaces(self):
        assert normalize_shipment_code(" sh 0001 ") == "SH0001"

    @pytest.mark.parametrize("raw,expected", [
        ("KZLSX0326/0012", "0326/0012"),
        ("0326-12", "0326/12"),
        ("0326.12", "0326/12"),
        ("LSX 0326 / 12", "0326/12"),
    ])
    def test_extract_lsx(self, raw, expected):
        assert normalize_shipment_code(raw, extract_lsx=True) == expected

    def test_extract_lsx_without_match_returns_cleaned_text(self):
        assert normalize_shipment_code("abc", extract_lsx=True) == "ABC"

    def test_none_is_empty(self):
        assert normalize_shipment_code(None) == ""


# ============================================================================
# Line keys
# ============================================================================

class TestLineKeys:

    def test_case_and_whitespace_variants_resolve_to_same_key(self):
        assert normalize_line_key(" mat01", "po1 ") == normalize_line_key("MAT01", "PO1")
        assert make_line_key("0001 ", "mat01", " Po1") == make_line_key("0001", "MAT01", "PO1")

    def test_no_collision_across_boundary(self):
        assert normalize_line_key("AB", "C") != normalize_line_key("A", "BC")

    def test_order_matters(self):
        assert normalize_line_key("MAT01", "PO1") != normalize_line_key("PO1", "MAT01")

    def test_split_line_key(self):
        key = make_line_key("0001", "MAT01", "PO1")
        assert split_line_key(key) == ("0001", "MAT01", "PO1")

    def test_split_rejects_partial_key(self):
        with pytest.raises(ValueError):
            split_line_key(normalize_line_key("MAT01", "PO1"))

    def test_display_line_key(self):
        assert display_line_key(make_line_key("0001", "MAT01", "PO1")) == "0001 / MAT01 / PO1"
        assert display_line_key(make_line_key("0001", "MAT01", "")) == "0001 / MAT01"

    def test_delimiter_is_not_printable(self):
        assert not KEY_DELIMITER.isprintable()


# ============================================================================
# Quantities
# ============================================================================

class TestParseQuantity:

    @pytest.mark.parametrize("raw,expected", [
        ("10", 10),
        (" 2.5 ", 2.5),
        ("300PCS", 300),
        ("1,000", 1000),
        ("abc", None),
        ("", None),
        (None, None),
    ])
    def test_values(self, raw, expected):
        assert parse_quantity(raw) == expected

    def test_integral_float_becomes_int(self):
        assert isinstance(parse_quantity("10.0"), int)


# ============================================================================
# Goods labels
# ============================================================================

class TestParseGoodsScan:

    def test_material_po_quantity(self):
        result = parse_goods_scan("MAT01|PO1|10")
        assert result.valid
        assert (result.material_code, result.po_or_pallet, result.quantity) == ("MAT01", "PO1", 10)

    def test_parts_are_trimmed_and_uppercased(self):
        result = parse_goods_scan(" mat01 | po1 | 2.5 ")
        assert (result.material_code, result.po_or_pallet, result.quantity) == ("MAT01", "PO1", 2.5)

    def test_material_po_without_quantity(self):
        result = parse_goods_scan("MAT01|PO1")
        assert result.valid
        assert result.quantity is None

    def test_stock_check_label_with_import_date(self):
        result = parse_goods_scan("MAT01|PO1|10|150326")
        assert result.imd == "150326"

    def test_non_numeric_quantity_is_invalid(self):
        result = parse_goods_scan("MAT01|PO1|abc")
        assert not result.valid
        assert "abc" in result.error

    def test_missing_material_is_invalid(self):
        assert not parse_goods_scan("|PO1|5").valid

    def test_bare_material(self):
        result = parse_goods_scan("mat01")
        assert result.valid
        assert result.material_code == "MAT01"
        assert result.po_or_pallet == ""
        assert result.quantity is None

    def test_bare_customer_code_is_mapped(self):
        result = parse_goods_scan("cust01", {"CUST01": "mat01"})
        assert result.material_code == "MAT01"
        assert result.customer_code == "CUST01"

    def test_quantity_plus_customer_code_label(self):
        result = parse_goods_scan("300+CUST01", {"CUST01": "MAT01"})
        assert result.valid
        assert result.quantity == 300
        assert result.material_code == "MAT01"
        assert result.customer_code == "CUST01"

    def test_pcs_marker_removed(self):
        result = parse_goods_scan("300+CUST01PCS")
        assert result.material_code == "CUST01"
        assert result.quantity == 300

    def test_quantity_plus_nothing_is_invalid(self):
        assert not parse_goods_scan("300+PCS").valid

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_scan_is_invalid(self, raw):
        result = parse_goods_scan(raw)
        assert not result.valid
        assert result.error

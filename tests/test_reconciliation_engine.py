"""
Tests for the accumulation & matching engine (src/reconciliation_engine.py).
"""

import pytest

from authorization import ManagerAuthorizer
from exceptions import AuthorizationError, ValidationError
from identity import make_line_key
from models import CheckLine, CheckMode, ExpectedLine, HistoryKind, LineStatus, TargetComparison
from reconciliation_engine import CHECK_RESULT_MISMATCH, CHECK_RESULT_OK, ReconciliationEngine
from snapshot_store import SnapshotStore
from storage import JsonFileBackend

SCOPE = "0001"
KEY = make_line_key("0001", "MAT01", "PO1")


def scan_qty(engine, quantity, material="MAT01", po="PO1", **kwargs):
    return engine.apply_scan(SCOPE, material, po, CheckMode.QUANTITY, quantity, "ASP0001", **kwargs)


def scan_carton(engine, material="MAT01", po="PO1", quantity=None, **kwargs):
    return engine.apply_scan(SCOPE, material, po, CheckMode.CARTON, quantity, "ASP0001", **kwargs)


@pytest.fixture
def manifest_engine(engine):
    engine.load_manifest(SCOPE, [
        ExpectedLine(SCOPE, "MAT01", "PO1", expected_quantity=15),
        ExpectedLine(SCOPE, "MAT02", "PO1", expected_cartons=3),
    ])
    return engine


# ============================================================================
# Manifest
# ============================================================================

class TestLoadManifest:

    def test_lines_pre_created(self, manifest_engine):
        lines = manifest_engine.lines(SCOPE)
        assert [line.line_id for line in lines] == ["CHK001", "CHK002"]
        assert lines[0].expected_quantity == 15
        assert lines[0].mode is None
        assert not lines[0].is_ad_hoc
        assert manifest_engine.has_manifest(SCOPE)

    def test_reload_keeps_scanned_totals(self, manifest_engine):
        scan_qty(manifest_engine, 4)
        other = ReconciliationEngine(manifest_engine.store)

        created = other.load_manifest(SCOPE, [ExpectedLine(SCOPE, "MAT01", "PO1", expected_quantity=20)])

        assert created == 0
        line = other.lines(SCOPE)[0]
        assert line.scanned_quantity == 4
        assert line.expected_quantity == 20

    def test_reload_in_same_engine_applies_corrected_figures(self, manifest_engine):
        scan_qty(manifest_engine, 4)

        created = manifest_engine.load_manifest(SCOPE, [
            ExpectedLine(SCOPE, "MAT01", "PO1", expected_quantity=20),
            ExpectedLine(SCOPE, "MAT03", "PO1", expected_quantity=6),
        ])

        assert created == 1
        line = manifest_engine.lines(SCOPE)[0]
        assert line.expected_quantity == 20
        assert line.scanned_quantity == 4
        assert manifest_engine.expected_for(SCOPE, KEY).expected_quantity == 20
        # MAT02 is no longer expected by the corrected manifest
        assert manifest_engine.expected_for(SCOPE, make_line_key(SCOPE, "MAT02", "PO1")) is None

    def test_adopts_ad_hoc_line(self, engine):
        scan_qty(engine, 5)
        assert engine.lines(SCOPE)[0].is_ad_hoc

        engine.load_manifest(SCOPE, [ExpectedLine(SCOPE, "mat01", "po1", expected_quantity=5)])

        line = engine.lines(SCOPE)[0]
        assert not line.is_ad_hoc
        assert engine.classify(line) == LineStatus.FULFILLED

    def test_duplicate_manifest_rows_keep_first(self, engine):
        engine.load_manifest(SCOPE, [
            ExpectedLine(SCOPE, "MAT01", "PO1", expected_quantity=15),
            ExpectedLine(SCOPE, "MAT01", "PO1", expected_quantity=99),
        ])
        lines = engine.lines(SCOPE)
        assert len(lines) == 1
        assert lines[0].expected_quantity == 15


# ============================================================================
# Accumulation
# ============================================================================

class TestIdentity:

    def test_case_and_whitespace_variants_hit_one_line(self, engine):
        scan_qty(engine, 1, material="MAT01", po="PO1")
        scan_qty(engine, 1, material=" mat01", po="po1 ")
        scan_qty(engine, 1, material="Mat01", po=" Po1")

        lines = engine.lines(SCOPE)
        assert len(lines) == 1
        assert lines[0].scanned_quantity == 3

    def test_pallet_completes_key_without_po(self, engine):
        result = scan_qty(engine, 2, po="", pallet="P01")
        assert result.line.pallet_or_po_key == "P01"
        assert result.line.line_key == make_line_key(SCOPE, "MAT01", "P01")

    def test_manifest_line_without_po_matched_by_material(self, engine):
        engine.load_manifest(SCOPE, [ExpectedLine(SCOPE, "MAT07", "", expected_quantity=10)])

        result = scan_qty(engine, 10, material="MAT07", po="", pallet="P01")

        assert not result.created
        assert result.line.pallet_or_po_key == ""
        assert result.line.pallet == "P01"
        assert result.line_status == LineStatus.FULFILLED

    def test_facility_scope_keeps_shipment_code(self, engine):
        result = engine.apply_scan("ASM1", "MAT01", "PO1", "quantity", 5, "ASP0001", shipment_code="0326/12")
        assert result.line.shipment_code == "0326/12"
        assert engine.lines("ASM1")[0].line_key == make_line_key("0326/12", "MAT01", "PO1")


class TestQuantityMode:

    def test_sum_of_deltas(self, engine):
        deltas = [10, 5, 2.5, 1, 7]
        for delta in deltas:
            scan_qty(engine, delta)
            scan_qty(engine, 100, material="MAT99")

        line = engine.lines(SCOPE)[0]
        assert line.scanned_quantity == sum(deltas)
        assert line.scanned_cartons == 0

    def test_mode_bound_on_first_scan(self, engine):
        result = scan_qty(engine, 3)
        assert result.line.mode is CheckMode.QUANTITY
        assert result.created

    @pytest.mark.parametrize("quantity", [0, -5, None])
    def test_non_positive_quantity_rejected(self, engine, quantity):
        scan_qty(engine, 4)
        result = scan_qty(engine, quantity)

        assert not result.accepted
        assert result.status == "INVALID_QUANTITY"
        assert engine.lines(SCOPE)[0].scanned_quantity == 4

    def test_rejected_first_scan_creates_nothing(self, engine):
        result = scan_qty(engine, 0)
        assert not result.accepted
        assert engine.lines(SCOPE) == []


class TestCartonMode:

    def test_each_scan_is_one_carton(self, engine):
        for _ in range(4):
            result = scan_carton(engine, quantity=50)

        assert result.line.scanned_cartons == 4
        assert result.line.scanned_quantity == 0

    def test_mode_mismatch_rejected(self, engine):
        scan_carton(engine)
        result = scan_qty(engine, 10)

        assert not result.accepted
        assert result.status == "MODE_MISMATCH"
        assert result.error.line_mode == "carton"
        line = engine.lines(SCOPE)[0]
        assert (line.scanned_quantity, line.scanned_cartons) == (0, 1)

    def test_legacy_mode_names(self, engine):
        assert engine.apply_scan(SCOPE, "MAT01", "PO1", "pn", None, "ASP0001").accepted
        assert engine.apply_scan(SCOPE, "MAT01", "PO1", "pn", None, "ASP0001").line.scanned_cartons == 2

    def test_unknown_mode_is_invalid_input(self, engine):
        result = engine.apply_scan(SCOPE, "MAT01", "PO1", "weight", 1, "ASP0001")
        assert result.status == "INVALID_INPUT"

    def test_empty_material_is_invalid_input(self, engine):
        assert engine.apply_scan(SCOPE, "  ", "PO1", "carton", None, "ASP0001").status == "INVALID_INPUT"


class TestLocking:

    def test_locked_line_rejects_scans(self, engine):
        line_id = scan_qty(engine, 5).line.line_id
        engine.lock_line(SCOPE, line_id, "ASP0001")

        result = scan_qty(engine, 5)

        assert not result.accepted
        assert result.status == "LINE_LOCKED"
        assert "manager" in result.message
        assert engine.get_line(SCOPE, line_id).scanned_quantity == 5

    def test_unlock_with_manager_badge(self, engine, manager_scan):
        line_id = scan_qty(engine, 5).line.line_id
        engine.lock_line(SCOPE, line_id)

        engine.unlock_line(SCOPE, line_id, manager_scan())

        assert scan_qty(engine, 1).accepted
        kinds = [e.kind for e in engine.store.get_history(KEY)]
        assert HistoryKind.UNLOCK in kinds and HistoryKind.LOCK in kinds

    def test_unlock_refuses_typed_badge(self, engine, manager_scan):
        line_id = scan_qty(engine, 5).line.line_id
        engine.lock_line(SCOPE, line_id)

        with pytest.raises(AuthorizationError):
            engine.unlock_line(SCOPE, line_id, manager_scan(window_ms=900))
        assert engine.get_line(SCOPE, line_id).locked

    def test_unlock_refuses_non_manager(self, engine, manager_scan):
        line_id = scan_qty(engine, 5).line.line_id
        engine.lock_line(SCOPE, line_id)

        with pytest.raises(AuthorizationError):
            engine.unlock_line(SCOPE, line_id, manager_scan(code="ASP0001"))

    def test_unknown_line(self, engine):
        with pytest.raises(ValidationError):
            engine.lock_line(SCOPE, "CHK404")


class TestDelete:

    def test_delete_unlocked_line_without_badge(self, engine):
        line_id = scan_qty(engine, 5).line.line_id
        engine.delete_line(SCOPE, line_id, operator_id="ASP0001")

        assert engine.lines(SCOPE) == []
        history = engine.store.get_history(KEY)
        assert history[0].kind == HistoryKind.DELETE
        assert len(history) == 2

    def test_delete_locked_line_needs_manager(self, engine, manager_scan):
        line_id = scan_qty(engine, 5).line.line_id
        engine.lock_line(SCOPE, line_id)

        with pytest.raises(AuthorizationError):
            engine.delete_line(SCOPE, line_id)

        engine.delete_line(SCOPE, line_id, manager_scan(code="asp0106"))
        assert engine.lines(SCOPE) == []
        assert engine.store.get_history(KEY)[0].operator_id == "ASP0106"

    def test_scan_after_delete_starts_new_line(self, engine):
        line_id = scan_qty(engine, 5).line.line_id
        engine.delete_line(SCOPE, line_id)

        result = scan_qty(engine, 2)
        assert result.created
        assert result.line.scanned_quantity == 2


# ============================================================================
# Classification
# ============================================================================

class TestClassification:

    def test_fulfilled_boundary(self, manifest_engine):
        result = scan_qty(manifest_engine, 14)
        assert result.line_status == LineStatus.PENDING
        assert result.comparison == TargetComparison.UNDER
        assert result.status == "SCAN_OK"

        result = scan_qty(manifest_engine, 1)
        assert result.line_status == LineStatus.FULFILLED
        assert result.comparison == TargetComparison.AT
        assert result.status == "LINE_FULFILLED"

    def test_over_target(self, manifest_engine):
        result = scan_qty(manifest_engine, 16)
        assert result.line_status == LineStatus.FULFILLED
        assert result.comparison == TargetComparison.OVER

    def test_carton_target(self, manifest_engine):
        for _ in range(3):
            result = scan_carton(manifest_engine, material="MAT02")
        assert result.line_status == LineStatus.FULFILLED

    def test_pre_created_line_mode_follows_manifest(self, manifest_engine):
        lines = {line.material_code: line for line in manifest_engine.lines(SCOPE)}
        assert manifest_engine.classify(lines["MAT01"]) == LineStatus.PENDING
        assert manifest_engine.classify(lines["MAT02"]) == LineStatus.PENDING

    def test_missing_target_for_mode_needs_acknowledgement(self, manifest_engine):
        # MAT01 has an expected quantity but no carton count
        result = scan_carton(manifest_engine, material="MAT01")
        assert result.line_status == LineStatus.NEEDS_ACKNOWLEDGEMENT
        assert result.comparison == TargetComparison.UNKNOWN

    def test_ad_hoc_line_needs_acknowledgement(self, engine):
        result = scan_qty(engine, 5)
        assert result.line.is_ad_hoc
        assert result.line_status == LineStatus.NEEDS_ACKNOWLEDGEMENT

        engine.acknowledge_line(SCOPE, result.line.line_id, "ASP0001")

        assert engine.classify(engine.get_line(SCOPE, result.line.line_id)) == LineStatus.FULFILLED

    def test_check_result(self, manifest_engine):
        line = scan_qty(manifest_engine, 15).line
        assert manifest_engine.check_result(line) == CHECK_RESULT_OK

        line = scan_qty(manifest_engine, 1).line
        assert manifest_engine.check_result(line) == CHECK_RESULT_MISMATCH

    def test_check_result_without_target(self, engine):
        assert engine.check_result(scan_qty(engine, 5).line) == CHECK_RESULT_MISMATCH


class TestAdHocPolicy:

    def test_disallowed_by_engine(self, store):
        engine = ReconciliationEngine(store, allow_ad_hoc=False)
        result = scan_qty(engine, 5)
        assert result.status == "NOT_IN_MANIFEST"
        assert engine.lines(SCOPE) == []

    def test_disallowed_per_scan(self, manifest_engine):
        assert scan_qty(manifest_engine, 5, allow_ad_hoc=False).accepted
        result = scan_qty(manifest_engine, 5, material="MAT99", allow_ad_hoc=False)
        assert not result.accepted
        assert result.status == "NOT_IN_MANIFEST"


# ============================================================================
# Legacy duplicates
# ============================================================================

class TestDuplicateCoalescing:

    def test_duplicate_records_merged_into_lowest_id(self, engine):
        duplicates = [
            CheckLine("CHK003", SCOPE, "MAT01", "PO1", CheckMode.QUANTITY, scanned_quantity=4,
                      expected_quantity=20),
            CheckLine("CHK001", SCOPE, "MAT01", "PO1", CheckMode.QUANTITY, scanned_quantity=6),
        ]
        engine.store.upsert_lines(SCOPE, duplicates)

        result = scan_qty(engine, 10)

        assert result.line.line_id == "CHK001"
        assert result.line.scanned_quantity == 20
        assert result.line.expected_quantity == 20
        assert [line.line_id for line in engine.lines(SCOPE)] == ["CHK001"]


# ============================================================================
# Several stations on one shipment
# ============================================================================

class TestSharedShipment:

    @pytest.fixture
    def shared_backend(self, tmp_path):
        return JsonFileBackend(tmp_path / "share")

    @pytest.fixture
    def stations(self, shared_backend, clock):
        first = ReconciliationEngine(SnapshotStore(shared_backend, clock=clock, station_id="PC01"))
        second = ReconciliationEngine(SnapshotStore(shared_backend, clock=clock, station_id="PC02"))
        first.lines(SCOPE)
        second.lines(SCOPE)
        return first, second

    def test_different_materials_both_persist(self, stations, shared_backend, clock):
        first, second = stations

        scan_qty(first, 10)
        scan_qty(second, 7, material="MAT02", po="PO2")
        scan_qty(first, 5)

        lines = SnapshotStore(shared_backend, clock=clock).load_snapshot(SCOPE)
        assert {line.material_code: line.scanned_quantity for line in lines} == {"MAT01": 15, "MAT02": 7}
        assert len({line.line_id for line in lines}) == 2
        assert first.store.audit_scope(SCOPE) == []

    def test_second_station_continues_line_of_first(self, stations):
        first, second = stations

        scan_qty(first, 10)
        result = scan_qty(second, 5)

        assert not result.created
        assert result.line.line_id == "CHK001-PC01"
        assert result.line.scanned_quantity == 15
        assert [line.line_id for line in second.lines(SCOPE)] == ["CHK001-PC01"]


# ============================================================================
# Signals, persistence and summary
# ============================================================================

class TestSignals:

    def test_line_updated_emitted(self, engine):
        received = []
        engine.line_updated.connect(lambda key, quantity, cartons: received.append((key, quantity, cartons)))

        scan_qty(engine, 10)

        assert received == [(KEY, 10.0, 0)]

    def test_not_emitted_on_rejection(self, engine):
        received = []
        engine.line_updated.connect(lambda *args: received.append(args))
        scan_qty(engine, 0)
        assert received == []

    def test_persistence_warning_on_store_failure(self, engine, backend, monkeypatch):
        from exceptions import PersistenceError

        warnings = []
        engine.persistence_warning.connect(warnings.append)

        def fail(*args):
            raise PersistenceError("share offline", operation="put_current_state", scope=SCOPE)

        monkeypatch.setattr(backend, "put_current_state", fail)
        result = scan_qty(engine, 3)

        assert result.accepted
        assert not result.persist.ok
        assert engine.lines(SCOPE)[0].scanned_quantity == 3
        assert len(warnings) == 1
        assert "put_current_state" in warnings[0]

    def test_unreachable_store_does_not_block_new_line(self, engine, backend, monkeypatch):
        from exceptions import PersistenceError

        warnings = []
        engine.persistence_warning.connect(warnings.append)
        engine.lines(SCOPE)

        def fail(*args):
            raise PersistenceError("share offline", operation="get_current_state", scope=SCOPE)

        monkeypatch.setattr(backend, "get_current_state", fail)
        result = scan_qty(engine, 3)

        assert result.accepted
        assert result.created
        assert engine.lines(SCOPE)[0].scanned_quantity == 3
        assert "get_current_state" in warnings[0]


class TestSummaryAndReset:

    def test_scope_summary(self, manifest_engine):
        scan_qty(manifest_engine, 15)
        scan_qty(manifest_engine, 2, material="MAT99")

        summary = manifest_engine.scope_summary(SCOPE)

        assert summary.total_lines == 3
        assert summary.fulfilled == 1
        assert summary.pending == 1
        assert summary.needs_acknowledgement == 1
        assert summary.ad_hoc == 1
        assert summary.scanned_quantity == 17
        assert summary.completion_rate == 33.3

    def test_empty_summary(self, engine):
        assert engine.scope_summary(SCOPE).completion_rate == 0.0

    def test_reset_scope(self, manifest_engine):
        scan_qty(manifest_engine, 15)

        manifest_engine.reset_scope(SCOPE, "ASP1752")

        assert manifest_engine.lines(SCOPE) == []
        assert not manifest_engine.has_manifest(SCOPE)
        assert scan_qty(manifest_engine, 1).line.is_ad_hoc
        assert len(manifest_engine.store.get_history(KEY)) >= 2


def test_custom_authorizer(store, manager_scan):
    engine = ReconciliationEngine(store, ManagerAuthorizer(["ASP0001"], max_window_ms=50))
    line_id = scan_qty(engine, 1).line.line_id
    engine.lock_line(SCOPE, line_id)

    with pytest.raises(AuthorizationError):
        engine.unlock_line(SCOPE, line_id, manager_scan(code="ASP1752"))
    engine.unlock_line(SCOPE, line_id, manager_scan(code="ASP0001", window_ms=10))
    assert not engine.get_line(SCOPE, line_id).locked

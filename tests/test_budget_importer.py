"""
Tests for the budget breakdown importer: row classification, aggregation
and persistence.
Run with: pytest tests/test_budget_importer.py -v
"""

import io

import pytest
from openpyxl import Workbook
from sqlalchemy.exc import OperationalError

from costtrak.models import AuditLog, DataImport, ProjectBudgetBreakdown
from costtrak.services import budget_importer
from costtrak.services.budget_importer import (
    BudgetLine,
    NegativeValuePolicy,
    NoValidRowsError,
    OutcomeKind,
    SkipReason,
    aggregate_rows,
    import_budget_breakdowns,
    is_total_line,
    persist_breakdowns,
    read_budget_rows,
    summarize_outcomes,
    undo_import_batch,
    walk_budgets_sheet,
)
from costtrak.services.import_result import PersistenceError
from costtrak.services.workbook import ImportFileError

HEADER = ["Line", "Discipline", None, "Description", "Manhours", "Value"]


def budgets_rows():
    """A small BUDGETS sheet exercising every skip rule."""
    return [
        HEADER,
        [1, "Piping", None, "Direct Labor", 1200, 85000],
        [2, None, None, "Materials", None, "$50,000.00"],
        [3, None, None, "Equipment", None, " $-   "],
        [4, None, None, "Total Piping", None, 135000],
        [5, "Electrical", None, "Direct Labor", 800, 60000],
        [6, None, None, "Credit", None, -500],
        [7, None, None, "Direct Labor", 200, 10000],
        [8, None, None, "All Labor", None, 155000],
        [9, None, None, None, None, None],
    ]


def emitted(outcomes):
    return [o.line for o in outcomes if o.kind == OutcomeKind.EMITTED]


def fetch_breakdowns(db, project_id):
    rows = (
        db.query(ProjectBudgetBreakdown)
        .filter(ProjectBudgetBreakdown.project_id == project_id)
        .all()
    )
    return {(r.discipline, r.cost_type): (r.value, r.manhours) for r in rows}


class TestWalkBudgetsSheet:
    """Positional BUDGETS layout."""

    def test_end_to_end_example(self):
        rows = [
            HEADER,
            [1, "PIPING", None, "DIRECT LABOR", 1000, "$50,000.00"],
            [2, "", None, "MATERIALS", 0, " $25,000 "],
        ]
        lines = emitted(walk_budgets_sheet(rows))
        assert lines == [
            BudgetLine(discipline="PIPING", cost_type="DIRECT LABOR", manhours=1000.0, value=50000.0),
            BudgetLine(discipline="PIPING", cost_type="MATERIALS", manhours=0.0, value=25000.0),
        ]

    def test_discipline_carry_forward(self):
        """Only data rows 1, 4 and 9 name a discipline."""
        names = {1: "CIVIL", 4: "STEEL", 9: "PIPING"}
        rows = [HEADER] + [
            [k, names.get(k), None, f"Item {k}", None, 100 * k] for k in range(1, 11)
        ]
        lines = emitted(walk_budgets_sheet(rows))
        by_item = {line.cost_type: line.discipline for line in lines}
        assert [by_item[f"ITEM {k}"] for k in (1, 2, 3)] == ["CIVIL"] * 3
        assert [by_item[f"ITEM {k}"] for k in (4, 5, 6, 7, 8)] == ["STEEL"] * 5
        assert [by_item[f"ITEM {k}"] for k in (9, 10)] == ["PIPING"] * 2

    def test_accounting_blank_is_emitted_as_zero(self):
        rows = [HEADER, [1, "PIPING", None, "EQUIPMENT", None, " $-   "]]
        lines = emitted(walk_budgets_sheet(rows))
        assert len(lines) == 1
        assert lines[0].value == 0.0
        assert lines[0].manhours is None

    def test_negative_value_skipped(self):
        rows = [HEADER, [1, "PIPING", None, "CREDIT", None, -500]]
        outcomes = walk_budgets_sheet(rows)
        assert emitted(outcomes) == []
        assert outcomes[0].kind == OutcomeKind.SKIPPED
        assert outcomes[0].reason == SkipReason.NEGATIVE_VALUE

    def test_negative_value_reported(self):
        rows = [HEADER, [1, "PIPING", None, "CREDIT", None, -500]]
        outcomes = walk_budgets_sheet(rows, NegativeValuePolicy.REPORT)
        assert outcomes[0].kind == OutcomeKind.ERROR
        assert outcomes[0].row == 2
        assert "-500" in outcomes[0].message

    def test_totals_never_emitted(self):
        lines = emitted(walk_budgets_sheet(budgets_rows()))
        assert all("TOTAL" not in line.cost_type for line in lines)
        assert all(line.cost_type != "ALL LABOR" for line in lines)

    def test_rows_before_first_discipline(self):
        rows = [HEADER, [1, None, None, "Mobilization", None, 1000]]
        outcomes = walk_budgets_sheet(rows)
        assert outcomes[0].reason == SkipReason.NO_DISCIPLINE

    def test_every_row_classified_once(self):
        rows = budgets_rows()
        outcomes = walk_budgets_sheet(rows)
        assert [o.row for o in outcomes] == list(range(2, len(rows) + 1))
        skipped, errors = summarize_outcomes(outcomes)
        assert len(emitted(outcomes)) == 5
        assert skipped == 4
        assert errors == []


class TestIsTotalLine:

    @pytest.mark.parametrize("text", ["Total Piping", "SUBTOTAL", "grand total", "ALL LABOR", "all labor"])
    def test_total_lines(self, text):
        assert is_total_line(text)

    @pytest.mark.parametrize("text", ["All Labor Burden", "Direct Labor", "Materials"])
    def test_regular_lines(self, text):
        assert not is_total_line(text)


class TestReadBudgetRows:
    """Header-based layout."""

    def test_reads_and_uppercases(self):
        rows = [
            ["Discipline", "Cost Type", "Manhours", "Value", "Description"],
            ["Piping", "Direct Labor", 100, "$5,000", "Shop fabrication"],
        ]
        lines = emitted(read_budget_rows(rows))
        assert lines == [BudgetLine("PIPING", "DIRECT LABOR", 100.0, 5000.0, "Shop fabrication")]

    def test_blank_rows_skipped(self):
        rows = [["Discipline", "Cost Type", "Value"], [None, None, 10]]
        outcomes = read_budget_rows(rows)
        assert outcomes[0].reason == SkipReason.EMPTY_ROW

    def test_validation_error_keeps_raw_row(self):
        rows = [["Discipline", "Cost Type", "Value"], [None, "Materials", 200]]
        outcomes = read_budget_rows(rows)
        assert outcomes[0].kind == OutcomeKind.ERROR
        assert outcomes[0].reason == SkipReason.VALIDATION_FAILED
        assert outcomes[0].row == 2
        assert outcomes[0].data == {"Discipline": None, "Cost Type": "Materials", "Value": 200}
        assert "discipline" in outcomes[0].message

    def test_missing_manhours_is_none(self):
        rows = [["Discipline", "Cost Type", "Value"], ["Civil", "Concrete", 300]]
        assert emitted(read_budget_rows(rows))[0].manhours is None

    def test_total_lines_skipped(self):
        rows = [
            ["Discipline", "Cost Type", "Value"],
            ["Piping", "Materials", 200],
            ["Piping", "Grand Total", 200],
            ["All", "All Labor", 500],
        ]
        outcomes = read_budget_rows(rows)
        assert [o.kind for o in outcomes] == [OutcomeKind.EMITTED, OutcomeKind.SKIPPED, OutcomeKind.SKIPPED]
        assert [o.reason for o in outcomes[1:]] == [SkipReason.TOTAL_LINE, SkipReason.TOTAL_LINE]
        assert emitted(outcomes) == [BudgetLine("PIPING", "MATERIALS", None, 200.0)]


class TestAggregateRows:
    """In-file duplicates are summed."""

    def test_sums_value_and_manhours(self):
        merged = aggregate_rows(1, [
            BudgetLine("PIPING", "DIRECT LABOR", 100.0, 1000.0),
            BudgetLine("PIPING", "DIRECT LABOR", 50.0, 500.0),
            BudgetLine("PIPING", "MATERIALS", None, 200.0),
        ])
        assert list(merged) == ["1|PIPING|DIRECT LABOR", "1|PIPING|MATERIALS"]
        assert merged["1|PIPING|DIRECT LABOR"].value == 1500.0
        assert merged["1|PIPING|DIRECT LABOR"].manhours == 150.0

    def test_manhours_none_only_when_all_none(self):
        all_none = aggregate_rows(1, [
            BudgetLine("STEEL", "MATERIALS", None, 10.0),
            BudgetLine("STEEL", "MATERIALS", None, 5.0),
        ])
        assert all_none["1|STEEL|MATERIALS"].manhours is None

        mixed = aggregate_rows(1, [
            BudgetLine("STEEL", "MATERIALS", None, 10.0),
            BudgetLine("STEEL", "MATERIALS", 3.0, 5.0),
        ])
        assert mixed["1|STEEL|MATERIALS"].manhours == 3.0

    def test_description_filled_from_later_row(self):
        merged = aggregate_rows(1, [
            BudgetLine("CIVIL", "CONCRETE", None, 10.0),
            BudgetLine("CIVIL", "CONCRETE", None, 5.0, "Foundations"),
            BudgetLine("CIVIL", "CONCRETE", None, 5.0, "Paving"),
        ])
        assert merged["1|CIVIL|CONCRETE"].description == "Foundations"

    def test_inputs_not_mutated(self):
        first = BudgetLine("CIVIL", "CONCRETE", None, 10.0)
        aggregate_rows(1, [first, BudgetLine("CIVIL", "CONCRETE", None, 5.0)])
        assert first.value == 10.0


class TestImportBudgetBreakdowns:
    """End to end against the database."""

    def test_import_budgets_sheet(self, db, project, users, make_xlsx):
        content = make_xlsx({"Cover": [["Estimate"]], "BUDGETS": budgets_rows()})
        result = import_budget_breakdowns(db, project.id, users["controller"].id, content, "est.xlsx")

        assert result.success
        assert result.positional
        assert result.sheet == "BUDGETS"
        assert (result.imported, result.updated, result.skipped) == (4, 0, 4)
        assert result.errors == []
        assert fetch_breakdowns(db, project.id) == {
            ("PIPING", "DIRECT LABOR"): (85000.0, 1200.0),
            ("PIPING", "MATERIALS"): (50000.0, None),
            ("PIPING", "EQUIPMENT"): (0.0, None),
            ("ELECTRICAL", "DIRECT LABOR"): (70000.0, 1000.0),
        }

    def test_tracks_import(self, db, project, users, make_xlsx):
        content = make_xlsx({"BUDGETS": budgets_rows()})
        result = import_budget_breakdowns(db, project.id, users["controller"].id, content, "est.xlsx")

        record = db.query(DataImport).one()
        assert record.import_type == "budget"
        assert record.import_status == "success"
        assert record.records_processed == 4
        assert record.import_metadata["import_batch_id"] == result.import_batch_id
        assert len(record.file_hash) == 64
        db.refresh(project)
        assert project.last_budget_import_at is not None
        assert db.query(AuditLog).filter(AuditLog.entity_type == "project_budget_breakdowns").count() == 1

    def test_report_policy_surfaces_negative_rows(self, db, project, users, make_xlsx):
        content = make_xlsx({"BUDGETS": budgets_rows()})
        result = import_budget_breakdowns(
            db, project.id, users["controller"].id, content, "est.xlsx",
            negative_policy=NegativeValuePolicy.REPORT,
        )
        assert result.skipped == 4
        assert [e.row for e in result.errors] == [7]
        assert result.status == "completed_with_errors"

    def test_clear_existing_is_idempotent(self, db, project, users, make_xlsx):
        content = make_xlsx({"BUDGETS": budgets_rows()})
        user_id = users["controller"].id
        import_budget_breakdowns(db, project.id, user_id, content, "est.xlsx", clear_existing=True)
        once = fetch_breakdowns(db, project.id)
        import_budget_breakdowns(db, project.id, user_id, content, "est.xlsx", clear_existing=True)
        assert fetch_breakdowns(db, project.id) == once

    def test_reimport_replaces_instead_of_summing(self, db, project, users, make_xlsx):
        content = make_xlsx({"BUDGETS": budgets_rows()})
        user_id = users["controller"].id
        import_budget_breakdowns(db, project.id, user_id, content, "est.xlsx")
        once = fetch_breakdowns(db, project.id)

        second = import_budget_breakdowns(db, project.id, user_id, content, "est.xlsx")
        assert (second.imported, second.updated) == (0, 4)
        assert fetch_breakdowns(db, project.id) == once

    def test_clear_existing_removes_stale_rows(self, db, project, users, make_xlsx):
        user_id = users["controller"].id
        import_budget_breakdowns(db, project.id, user_id, make_xlsx({"BUDGETS": budgets_rows()}), "v1.xlsx")

        revised = [HEADER, [1, "Civil", None, "Concrete", 40, 9000]]
        import_budget_breakdowns(
            db, project.id, user_id, make_xlsx({"BUDGETS": revised}), "v2.xlsx", clear_existing=True
        )
        assert fetch_breakdowns(db, project.id) == {("CIVIL", "CONCRETE"): (9000.0, 40.0)}

    def test_header_layout(self, db, project, users, make_xlsx):
        content = make_xlsx({"Sheet1": [
            ["Discipline", "Cost Type", "Man Hours", "Amount", "Notes"],
            ["Piping", "Direct Labor", 100, 5000, "Shop"],
            [None, "Materials", None, 200, None],
            ["Piping", "Direct Labor", 20, 1000, None],
        ]})
        result = import_budget_breakdowns(db, project.id, users["controller"].id, content, "b.xlsx")
        assert not result.positional
        assert (result.imported, result.skipped) == (1, 1)
        assert result.errors[0].row == 3
        assert fetch_breakdowns(db, project.id) == {("PIPING", "DIRECT LABOR"): (6000.0, 120.0)}

    def test_zero_valid_rows_writes_nothing(self, db, project, users, make_xlsx):
        content = make_xlsx({"BUDGETS": [HEADER, [1, "Piping", None, "Total Piping", None, 100]]})
        with pytest.raises(NoValidRowsError) as exc:
            import_budget_breakdowns(db, project.id, users["controller"].id, content, "est.xlsx")
        assert exc.value.result.skipped == 1
        assert not exc.value.result.success
        assert fetch_breakdowns(db, project.id) == {}
        assert db.query(DataImport).count() == 0

    def test_header_only_sheet(self, db, project, users, make_xlsx):
        content = make_xlsx({"Sheet1": [["Discipline", "Cost Type", "Value"]]})
        with pytest.raises(ImportFileError):
            import_budget_breakdowns(db, project.id, users["controller"].id, content, "b.xlsx")

    def test_budgets_sheet_below_blank_rows(self, db, project, users):
        """Header on row 3 of the sheet, data on row 4."""
        wb = Workbook()
        ws = wb.active
        ws.title = "BUDGETS"
        ws["B3"] = "Discipline"
        ws["D3"] = "Description"
        ws["F3"] = "Value"
        ws["B4"] = "Piping"
        ws["D4"] = "Labor"
        ws["F4"] = 1000
        buf = io.BytesIO()
        wb.save(buf)

        result = import_budget_breakdowns(db, project.id, users["controller"].id, buf.getvalue(), "est.xlsx")
        assert result.positional
        assert (result.imported, result.skipped) == (1, 0)
        assert fetch_breakdowns(db, project.id) == {("PIPING", "LABOR"): (1000.0, None)}

    def test_persist_counts_existing_keys(self, db, project, users):
        user_id = users["controller"].id
        lines = [BudgetLine("PIPING", "MATERIALS", None, 10.0)]
        assert persist_breakdowns(db, project.id, lines, False, "batch-1", user_id) == (1, 0)
        lines.append(BudgetLine("PIPING", "EQUIPMENT", None, 5.0))
        assert persist_breakdowns(db, project.id, lines, False, "batch-2", user_id) == (1, 1)
        db.commit()
        assert fetch_breakdowns(db, project.id)[("PIPING", "MATERIALS")] == (10.0, None)


class TestUndoImportBatch:

    def test_removes_rows_from_batch(self, db, project, users, make_xlsx):
        user_id = users["controller"].id
        result = import_budget_breakdowns(
            db, project.id, user_id, make_xlsx({"BUDGETS": budgets_rows()}), "est.xlsx"
        )
        assert undo_import_batch(db, result.import_batch_id, user_id) == 4
        assert fetch_breakdowns(db, project.id) == {}
        assert db.query(AuditLog).filter(AuditLog.action == "undo_import").count() == 1

    def test_unknown_batch(self, db, users):
        assert undo_import_batch(db, "no-such-batch", users["controller"].id) == 0


def failing_insert(db):
    def insert(table):
        raise OperationalError("INSERT INTO project_budget_breakdowns", {}, Exception("disk full"))
    return insert


class TestPersistenceFailure:
    """A rejected write leaves the project's rows as they were."""

    def test_error_message(self, db, project, users, make_xlsx, monkeypatch):
        monkeypatch.setattr(budget_importer, "_insert_for", failing_insert)
        content = make_xlsx({"BUDGETS": budgets_rows()})
        with pytest.raises(PersistenceError, match="Database error: disk full"):
            import_budget_breakdowns(db, project.id, users["controller"].id, content, "est.xlsx")
        assert db.query(DataImport).count() == 0

    def test_clear_existing_rolled_back(self, db, project, users, make_xlsx, monkeypatch):
        user_id = users["controller"].id
        import_budget_breakdowns(db, project.id, user_id, make_xlsx({"BUDGETS": budgets_rows()}), "v1.xlsx")
        before = fetch_breakdowns(db, project.id)

        monkeypatch.setattr(budget_importer, "_insert_for", failing_insert)
        revised = [HEADER, [1, "Civil", None, "Concrete", 40, 9000]]
        with pytest.raises(PersistenceError):
            import_budget_breakdowns(
                db, project.id, user_id, make_xlsx({"BUDGETS": revised}), "v2.xlsx", clear_existing=True
            )

        db.expire_all()
        assert fetch_breakdowns(db, project.id) == before
        assert len(before) == 4

"""
Tests for the employee roster importer.
Run with: pytest tests/test_employee_import.py -v
"""

import pytest
from sqlalchemy.exc import IntegrityError

from costtrak.models import AuditLog, CraftType, Employee
from costtrak.services import employee_importer
from costtrak.services.employee_importer import (
    format_employee_number,
    import_employees,
    parse_employee_row,
    split_full_name,
)
from costtrak.services.import_result import PersistenceError
from costtrak.services.workbook import SheetNotFoundError

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
HEADER = ["Employee ID", "First Name", "Last Name", "Craft", "Base Rate", "Category", "Job Title"]


def roster():
    return {
        "Summary": [["Quarter", "Total"], ["Q1", 5]],
        "Roster": [
            ["ICS Employee Roster"],
            HEADER,
            [1001, "John", "Smith", "PF1", 52.5, "Direct", "Pipefitter"],
            ["T1002", "Jane", "Doe", None, 38, "Indirect", "Safety"],
            [1003, None, "Nofirst", "PF1", 40, "Direct", None],
            [1001, "John", "Smith", "PF1", 52.5, "Direct", None],
            [1004, "Al", "Jones", "wld", 45, "Supervisor", None],
        ],
    }


class TestRowHelpers:

    def test_split_last_first(self):
        assert split_full_name("Smith, John") == ("John", "Smith")

    def test_split_first_last(self):
        assert split_full_name("John Paul Smith") == ("John", "Paul Smith")

    def test_employee_number_prefix(self):
        assert format_employee_number("1001") == "T1001"
        assert format_employee_number("T1001") == "T1001"

    def test_full_name_column(self):
        fields = parse_employee_row(["1001", "Smith, John", "$42.50"], {
            "employeeNumber": 0, "fullName": 1, "rate": 2,
        })
        assert (fields["first_name"], fields["last_name"]) == ("John", "Smith")
        assert fields["base_rate"] == 42.5
        assert fields["category"] == "Direct"
        assert fields["is_direct"]

    def test_category_must_match_exactly(self):
        fields = parse_employee_row(["Staff"], {"category": 0})
        assert fields["category"] == "Staff"
        assert not fields["is_direct"]
        assert parse_employee_row(["staff"], {"category": 0})["category"] == "Direct"


class TestImportEmployees:

    def test_import_roster(self, db, users, make_xlsx):
        result = import_employees(db, users["controller"].id, make_xlsx(roster()), "roster.xlsx")

        assert result.success
        assert (result.total, result.imported, result.updated, result.skipped) == (5, 3, 0, 2)
        assert [(e.row, e.message) for e in result.errors] == [
            (5, "Missing required fields (employee number, first name, or last name)"),
            (6, "Duplicate employee number in file"),
        ]
        assert result.craft_types == {"created": 2, "errors": []}

        employees = {e.employee_number: e for e in db.query(Employee).all()}
        assert set(employees) == {"T1001", "T1002", "T1004"}
        assert employees["T1001"].base_rate == 52.5
        assert employees["T1001"].craft_type.code == "PF1"
        assert employees["T1001"].job_title_description == "Pipefitter"
        assert employees["T1002"].craft_type.code == "INDIRECT"
        assert not employees["T1002"].is_direct
        assert employees["T1004"].category == "Direct"
        assert employees["T1004"].craft_type.code == "WLD"

    def test_default_craft_types_created(self, db, users, make_xlsx):
        import_employees(db, users["controller"].id, make_xlsx(roster()), "roster.xlsx")
        codes = {c.code for c in db.query(CraftType).all()}
        assert {"DIRECT", "INDIRECT", "STAFF", "PF1", "WLD"} <= codes

    def test_update_mode(self, db, users, make_xlsx):
        user_id = users["controller"].id
        import_employees(db, user_id, make_xlsx(roster()), "roster.xlsx")

        revised = make_xlsx({"Roster": [
            HEADER,
            [1001, "John", "Smith", "PF1", 55, "Direct", "Foreman"],
        ]})
        result = import_employees(db, user_id, revised, "roster.xlsx")
        assert (result.imported, result.updated) == (0, 1)
        assert result.success

        john = db.query(Employee).filter_by(employee_number="T1001").one()
        assert john.base_rate == 55
        assert john.job_title_description == "Pipefitter"
        assert db.query(AuditLog).filter_by(action="update", entity_type="employee").count() == 1

    def test_update_keeps_rate_when_file_has_none(self, db, users, make_xlsx):
        user_id = users["controller"].id
        import_employees(db, user_id, make_xlsx(roster()), "roster.xlsx")
        revised = make_xlsx({"Roster": [HEADER, [1001, "John", "Smith", "PF1", None, "Direct", None]]})
        import_employees(db, user_id, revised, "roster.xlsx")
        assert db.query(Employee).filter_by(employee_number="T1001").one().base_rate == 52.5

    def test_create_only_reports_existing(self, db, users, make_xlsx):
        user_id = users["controller"].id
        import_employees(db, user_id, make_xlsx(roster()), "roster.xlsx")

        result = import_employees(db, user_id, make_xlsx(roster()), "roster.xlsx", mode="create-only")
        assert not result.success
        assert result.imported == 0
        assert sum(e.message == "Employee already exists" for e in result.errors) == 3

    def test_failed_update_does_not_sink_the_rest(self, db, users, make_xlsx, monkeypatch):
        """Each update runs in its own savepoint."""
        user_id = users["controller"].id
        import_employees(db, user_id, make_xlsx(roster()), "roster.xlsx")

        def parse_without_category(row, column_map):
            fields = parse_employee_row(row, column_map)
            if format_employee_number(fields["employee_number"]) == "T1001":
                fields["category"] = None
            return fields

        monkeypatch.setattr(employee_importer, "parse_employee_row", parse_without_category)
        revised = make_xlsx({"Roster": [
            HEADER,
            [1001, "John", "Smith", "PF1", 60, "Direct", None],
            [1004, "Al", "Jones", "wld", 50, "Supervisor", None],
        ]})
        result = import_employees(db, user_id, revised, "roster.xlsx")

        assert result.success
        assert (result.imported, result.updated, result.skipped) == (0, 1, 0)
        assert [(e.row, e.message, e.data) for e in result.errors] == [
            (0, "Failed to update employee", {"employee_number": "T1001"}),
        ]
        db.expire_all()
        assert db.query(Employee).filter_by(employee_number="T1001").one().base_rate == 52.5
        assert db.query(Employee).filter_by(employee_number="T1004").one().base_rate == 50
        assert db.query(AuditLog).filter_by(action="update", entity_type="employee").count() == 1

    def test_failed_batch_create(self, db, users, make_xlsx, monkeypatch):
        def reject(instances):
            raise IntegrityError("INSERT INTO employees", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(db, "add_all", reject)
        with pytest.raises(PersistenceError, match="Failed to create employees: UNIQUE constraint failed"):
            import_employees(db, users["controller"].id, make_xlsx(roster()), "roster.xlsx")
        assert db.query(Employee).count() == 0

    def test_no_employee_sheet(self, db, users, make_xlsx):
        content = make_xlsx({"Summary": [["Quarter", "Total"], ["Q1", 5]]})
        with pytest.raises(SheetNotFoundError):
            import_employees(db, users["controller"].id, content, "roster.xlsx")

    def test_unknown_mode(self, db, users, make_xlsx):
        with pytest.raises(ValueError):
            import_employees(db, users["controller"].id, make_xlsx(roster()), "roster.xlsx", mode="replace")


class TestEmployeeImportApi:

    def post(self, client, headers, content, mode=None):
        data = {"mode": mode} if mode else {}
        return client.post(
            "/api/employees/import",
            files={"file": ("roster.xlsx", content, XLSX)},
            data=data,
            headers=headers,
        )

    def test_controller_import(self, client, users, auth, make_xlsx):
        resp = self.post(client, auth(users["controller"]), make_xlsx(roster()))
        assert resp.status_code == 200
        body = resp.json()
        assert body["imported"] == 3
        assert body["mode"] == "update"
        assert body["total"] == 5

    def test_project_manager_forbidden(self, client, users, auth, make_xlsx):
        resp = self.post(client, auth(users["project_manager"]), make_xlsx(roster()))
        assert resp.status_code == 403

    def test_bad_mode(self, client, users, auth, make_xlsx):
        resp = self.post(client, auth(users["ops_manager"]), make_xlsx(roster()), mode="replace")
        assert resp.status_code == 400

    def test_no_employee_data(self, client, users, auth, make_xlsx):
        content = make_xlsx({"Summary": [["Quarter", "Total"], ["Q1", 5]]})
        resp = self.post(client, auth(users["controller"]), content)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "No employee data found in Excel file. Please check the file format."

    def test_database_error(self, client, db, users, auth, make_xlsx, monkeypatch):
        def reject(instances):
            raise IntegrityError("INSERT INTO employees", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(db, "add_all", reject)
        resp = self.post(client, auth(users["controller"]), make_xlsx(roster()))
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to create employees: UNIQUE constraint failed"
        assert db.query(Employee).count() == 0

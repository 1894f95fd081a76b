import base64
import copy
import io
import unittest
from datetime import date, datetime

import openpyxl

from classifiers import CALL, COMPLETED, MEETING, OTHER, OVERDUE, PENDING, VISIT
from roster import Roster
from settings import DEFAULT_LAYOUTS, load_config
from sheet_parser import (
    SheetParseError,
    WorkbookParseError,
    is_aggregate_row,
    load_workbook_grids,
    locate_header,
    map_columns,
    parse_activities_sheet,
    parse_detail_sheet,
    parse_file,
    parse_pivot_sheet,
    parse_visits_sheet,
    parse_workbook,
)


def _roster():
    return Roster(["ALICE SMITH", "BOB JONES"], unresolved="(Sin comercial)")


def _xlsx_bytes(sheets):
    """sheets: list of (title, rows); None marks a blank cell."""
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for title, rows in sheets:
        ws = wb.create_sheet(title)
        for r in rows:
            ws.append(r)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


VISITS_GRID = [
    ["Reporte de eventos", "", "", ""],
    ["Comercial", "Fecha", "Cliente", "Asunto"],
    ["Alice Smith", "05/03/2024", "ACME", "Visita planta"],
    ["", "06/03/2024", "ACME", "Llamada de seguimiento"],
    ["", "07/03/2024", "Beta", "Reunión comercial"],
    ["", "08/03/2024", "Gamma", "Correo"],
    ["Subtotal Alice Smith", "", "", "4"],
    ["Comercial", "Fecha", "Cliente", "Asunto"],
    ["Bob Jones", "", "", ""],
    ["", "09/02/2024", "Delta", "Visita"],
    ["", "", "", ""],
    ["Total", "", "", "5"],
]

DETAIL_GRID = [
    ["Informe de oportunidades", "", "", "", ""],
    ["", "", "", "", ""],
    ["Propietario de la oportunidad", "Etapa", "Fecha de creación", "Fecha de cierre", "Precio total"],
    ["Alice Smith", "Closed Won", "01/02/2024", "15/03/2024", "1.000.000"],
    ["", "Closed Lost", "05/02/2024", "20/02/2024", 500000],
    ["", "Proposal", "10/03/2024", "", "250.000,50"],
    ["Subtotal", "", "", "", "1.750.000"],
    ["Bob Jones", "", "", "", ""],
    ["", "Closed Won", "01/03/2024", "11/03/2024", 2000000],
    ["Total", "", "", "", "3.750.000"],
]

PIVOT_GRID = [
    ["", "Qualification", "", "Closed Won", "", "Total general", ""],
    ["Propietario de oportunidad", "Suma de Precio total", "Recuento de registros",
     "Suma de Precio total", "Recuento de registros", "Suma de Precio total", "Recuento de registros"],
    ["Alice Smith", 100, 2, 50, 1, 150, 3],
    ["Bob Jones", 0, 0, 200, 2, 200, 2],
    ["", "", "", "", "", "", ""],
    ["alice smith", 10, 1, "", "", 10, 1],
    ["Total general", 110, 3, 250, 3, 360, 6],
    ["Bob Jones", 1, 1, 1, 1, 1, 1],
]


class TestLocator(unittest.TestCase):
    def test_first_claim_per_column(self):
        layout = DEFAULT_LAYOUTS["detail"]
        header = ["Propietario", "Fecha de creación", "Fecha de cierre", "Etapa", "Precio total", "Total"]
        mapping = map_columns(header, layout)
        self.assertEqual(mapping, {"owner": 0, "created": 1, "closed": 2, "stage": 3, "amount": 4})

    def test_amount_skips_count_columns(self):
        mapping = map_columns(["Propietario", "Recuento total", "Importe"], DEFAULT_LAYOUTS["detail"])
        self.assertEqual(mapping["amount"], 2)

    def test_best_scoring_row(self):
        idx, col_map = locate_header(DETAIL_GRID, DEFAULT_LAYOUTS["detail"], "Detalle")
        self.assertEqual(idx, 2)
        self.assertEqual(col_map["owner"], 0)
        self.assertEqual(col_map["amount"], 4)

    def test_missing_owner_raises(self):
        with self.assertRaises(SheetParseError) as ctx:
            locate_header([["a", "b"], ["1", "2"]], DEFAULT_LAYOUTS["detail"], "Notas")
        self.assertEqual(ctx.exception.sheet, "Notas")
        self.assertIn("owner", ctx.exception.reason)

    def test_fixed_columns_fill_missing_roles(self):
        grid = [["x", "Creado por", "y", "z"]]
        _, col_map = locate_header(grid, DEFAULT_LAYOUTS["activities"], "Tareas")
        self.assertEqual(col_map["owner"], 1)
        self.assertEqual(col_map["due"], 3)
        self.assertEqual(col_map["status"], 12)

    def test_fixed_columns_override_mode(self):
        layout = copy.deepcopy(DEFAULT_LAYOUTS["visits"])
        layout["fixed_mode"] = "override"
        grid = [["Comercial", "Ejecutivo", "Fecha", "Asunto"]]
        _, col_map = locate_header(grid, layout, "Eventos")
        self.assertEqual(col_map["owner"], 1)
        self.assertEqual(col_map["subject"], 9)


class TestAggregateRows(unittest.TestCase):
    def test_subtotal_and_total(self):
        self.assertTrue(is_aggregate_row(["Subtotal", "", "5"]))
        self.assertTrue(is_aggregate_row(["", "TÓTAL", "5"]))
        self.assertTrue(is_aggregate_row(["Recuento de registros", 3]))
        self.assertTrue(is_aggregate_row(["Suma de Precio", 3]))

    def test_data_rows(self):
        self.assertFalse(is_aggregate_row(["Alice", "Key account", "Visita"]))
        self.assertFalse(is_aggregate_row(["Alice", "Closed Won", 100]))


class TestVisitsSheet(unittest.TestCase):
    def setUp(self):
        self.model = parse_visits_sheet(VISITS_GRID, "Eventos", _roster(), DEFAULT_LAYOUTS["visits"])

    def test_carry_forward(self):
        people = [r.salesperson for r in self.model["rows"]]
        self.assertEqual(people, ["ALICE SMITH"] * 4 + ["BOB JONES"])

    def test_group_title_subtotal_and_repeated_header_are_not_rows(self):
        self.assertEqual(len(self.model["rows"]), 5)
        self.assertNotIn("(Sin comercial)", [r.salesperson for r in self.model["rows"]])

    def test_categories_and_periods(self):
        self.assertEqual([r.category for r in self.model["rows"]], [VISIT, CALL, MEETING, OTHER, VISIT])
        self.assertEqual(self.model["periods"], ["2024-02", "2024-03"])
        self.assertEqual(self.model["rows"][0].client, "ACME")

    def test_no_rows_raises(self):
        with self.assertRaises(SheetParseError):
            parse_visits_sheet(VISITS_GRID[:2], "Vacía", _roster(), DEFAULT_LAYOUTS["visits"])

    def test_undated_row_lands_in_empty_period(self):
        grid = [
            ["Comercial", "Fecha", "Cliente", "Asunto"],
            ["Alice Smith", "05/03/2024", "ACME", "Visita"],
            ["", "", "Beta", "Visita sin fecha"],
        ]
        model = parse_visits_sheet(grid, "Eventos", _roster(), DEFAULT_LAYOUTS["visits"])
        self.assertEqual([r.period for r in model["rows"]], ["2024-03", ""])
        self.assertEqual(model["periods"], ["", "2024-03"])

    def test_title_row_with_note_in_unmapped_column(self):
        grid = [
            ["Comercial", "Fecha", "Cliente", "Asunto", "Notas"],
            ["Alice Smith", "", "", "", "grupo"],
            ["", "05/03/2024", "ACME", "Visita", ""],
        ]
        model = parse_visits_sheet(grid, "Eventos", _roster(), DEFAULT_LAYOUTS["visits"])
        self.assertEqual(len(model["rows"]), 1)
        self.assertEqual(model["rows"][0].salesperson, "ALICE SMITH")
        self.assertEqual(model["rows"][0].client, "ACME")

    def test_rows_before_first_salesperson_are_dropped(self):
        grid = [
            ["Comercial", "Fecha", "Cliente", "Asunto"],
            ["", "01/03/2024", "Huérfano", "Visita"],
            ["", "02/03/2024", "Huérfano", "Llamada"],
            ["Bob Jones", "03/03/2024", "Delta", "Visita"],
        ]
        model = parse_visits_sheet(grid, "Eventos", _roster(), DEFAULT_LAYOUTS["visits"])
        self.assertEqual([(r.salesperson, r.client) for r in model["rows"]], [("BOB JONES", "Delta")])


class TestDetailSheet(unittest.TestCase):
    def setUp(self):
        self.model = parse_detail_sheet(DETAIL_GRID, "Detalle", _roster(), DEFAULT_LAYOUTS["detail"])

    def test_rows(self):
        rows = self.model["rows"]
        self.assertEqual(len(rows), 4)
        self.assertEqual([r.salesperson for r in rows], ["ALICE SMITH"] * 3 + ["BOB JONES"])
        self.assertEqual(rows[0].amount, 1000000)
        self.assertEqual(rows[1].amount, 500000)
        self.assertAlmostEqual(rows[2].amount, 250000.5)
        self.assertEqual(rows[0].created_at, date(2024, 2, 1))
        self.assertEqual(rows[0].closed_at, date(2024, 3, 15))
        self.assertIsNone(rows[2].closed_at)

    def test_closed_rows_and_offers(self):
        self.assertEqual(len(self.model["closed_rows"]), 3)
        self.assertFalse(self.model["rows"][2].is_closed)
        self.assertEqual(self.model["periods"], ["2024-02", "2024-03"])
        self.assertIn(("ALICE SMITH", "2024-03"), self.model["offers"])


class TestActivitiesSheet(unittest.TestCase):
    GRID = [
        ["Creado por", "Asunto", "Fecha de vencimiento", "Estado"],
        ["Alice Smith", "Enviar propuesta", "15/03/2024", "Abierta"],
        ["", "Llamar", "14/03/2024", "Abierta"],
        ["", "Visitar", "01/01/2024", "Completada"],
        ["Pedro Picapiedra", "Otra", "", "Abierta"],
        ["Bob Jones", "Seguimiento", "", "En curso"],
    ]

    def test_statuses_with_injected_today(self):
        model = parse_activities_sheet(self.GRID, "Tareas", _roster(), DEFAULT_LAYOUTS["activities"],
                                       today=date(2024, 3, 15))
        got = [(r.salesperson, r.status) for r in model["rows"]]
        self.assertEqual(got, [
            ("ALICE SMITH", PENDING),
            ("ALICE SMITH", OVERDUE),
            ("ALICE SMITH", COMPLETED),
            ("BOB JONES", PENDING),
        ])


class TestPivotSheet(unittest.TestCase):
    def setUp(self):
        self.model = parse_pivot_sheet(PIVOT_GRID, "Resumen", _roster(), DEFAULT_LAYOUTS["pivot"])

    def test_rows_merge_and_stop_at_total(self):
        rows = {r.salesperson: r.values for r in self.model["rows"]}
        self.assertEqual(list(rows), ["ALICE SMITH", "BOB JONES"])
        self.assertEqual(rows["ALICE SMITH"]["Qualification"], {"sum": 110.0, "count": 3.0})
        self.assertEqual(rows["BOB JONES"]["Closed Won"], {"sum": 200.0, "count": 2.0})

    def test_stage_labels_carry_across_columns(self):
        self.assertEqual(self.model["stages"], ["Qualification", "Closed Won", "Total general"])

    def test_single_header_row(self):
        grid = [
            ["Propietario", "Etapa: Qualification", "Closed Won"],
            ["Bob Jones", 10, 20],
        ]
        model = parse_pivot_sheet(grid, "Resumen", _roster(), DEFAULT_LAYOUTS["pivot"])
        self.assertEqual(model["rows"][0].values["Closed Won"], {"sum": 20.0, "count": 0.0})


class TestWorkbook(unittest.TestCase):
    def test_falls_back_to_next_sheet(self):
        sheets = {"Notas": [["Exportado el 2024-03-31"]], "Detalle": DETAIL_GRID}
        model = parse_workbook(sheets, "detail", _roster(), DEFAULT_LAYOUTS)
        self.assertEqual(model["sheet"], "Detalle")

    def test_all_sheets_fail(self):
        sheets = {"A": [["x"]], "B": [["y", "z"]]}
        with self.assertRaises(WorkbookParseError) as ctx:
            parse_workbook(sheets, "detail", _roster(), DEFAULT_LAYOUTS)
        msg = str(ctx.exception)
        self.assertIn("A: missing column for owner", msg)
        self.assertIn(" | B: missing column for owner", msg)
        self.assertEqual(len(ctx.exception.failures), 2)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            parse_workbook({"A": [["x"]]}, "budget", _roster(), DEFAULT_LAYOUTS)


class TestParseFile(unittest.TestCase):
    def setUp(self):
        self.config = load_config("")
        self.config["roster"] = ["ALICE SMITH", "BOB JONES"]
        self.config["aliases"] = {}
        rows = [
            ["Propietario", "Etapa", "Fecha de creación", "Fecha de cierre", "Importe"],
            ["Alice Smith", "Closed Won", datetime(2024, 2, 1), datetime(2024, 3, 15), 1000],
            [None, "Negotiation", datetime(2024, 3, 2), None, 300],
        ]
        self.xlsx = _xlsx_bytes([("Portada", [["Reporte"]]), ("Detalle", rows)])

    def test_load_grids_blank_cells(self):
        sheets = load_workbook_grids(self.xlsx, "detalle.xlsx")
        self.assertEqual(list(sheets), ["Portada", "Detalle"])
        self.assertEqual(sheets["Detalle"][2][0], "")

    def test_parse_bytes(self):
        result = parse_file(self.xlsx, "detail", filename="detalle.xlsx", config=self.config)
        self.assertEqual(result["errors"], [])
        self.assertEqual(result["file_type"], "DETAIL")
        self.assertEqual(result["metadata"]["source_sheet"], "Detalle")
        self.assertEqual(result["metadata"]["row_count"], 2)
        self.assertEqual(result["metadata"]["salespeople"], ["ALICE SMITH"])
        self.assertEqual(result["rows"][0]["created_at"], "2024-02-01")

    def test_parse_base64(self):
        b64 = base64.b64encode(self.xlsx).decode("ascii")
        result = parse_file(b64, "detail", filename="detalle.xlsx", config=self.config, is_base64=True)
        self.assertEqual(result["errors"], [])
        self.assertEqual(len(result["model"]["rows"]), 2)

    def test_never_raises(self):
        empty = parse_file(b"", "detail", filename="vacio.xlsx", config=self.config)
        self.assertEqual(empty["file_type"], "ERROR")
        self.assertTrue(empty["errors"])
        bad = parse_file(_xlsx_bytes([("Hoja1", [["nada"]])]), "detail", filename="x.xlsx", config=self.config)
        self.assertEqual(bad["file_type"], "ERROR")
        self.assertIsNone(bad["model"])
        self.assertIn("Hoja1: missing column for owner", bad["errors"][0])


if __name__ == '__main__':
    unittest.main()

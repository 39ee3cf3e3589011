"""Demonstration script for the MES system management core."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from pprint import pprint

from . import EmployeeStatus, HasChildren, MESService


def print_tree(service: MESService) -> None:
    for root in service.department_hierarchy.forest:
        for node in root.walk():
            depth = node.entity.materialized_path.count("/")
            print(f"{'  ' * depth}{node.entity.name} [{node.entity.materialized_path}]")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    mes = MESService()

    # Organisation
    plant = mes.create_department(name="Plant Suzhou", code="SZ", leader="Li Wei")
    production = mes.create_department(
        name="Production", code="SZ-PROD", parent_id=plant.id, sort_order=1
    )
    machining = mes.create_department(
        name="Machining", code="SZ-PROD-MC", parent_id=production.id, sort_order=1
    )
    assembly = mes.create_department(
        name="Assembly", code="SZ-PROD-AS", parent_id=production.id, sort_order=2
    )
    logistics = mes.create_department(
        name="Logistics", code="SZ-LOG", parent_id=plant.id, sort_order=2
    )

    print("Initial department tree:")
    print_tree(mes)

    # Assembly moves over to logistics, its path follows
    mes.department_hierarchy.reparent(assembly.id, logistics.id)
    print("\nAfter moving Assembly below Logistics:")
    print_tree(mes)

    print("\nCan Production move below Machining?",
          mes.department_hierarchy.can_reparent(production.id, machining.id))

    try:
        mes.department_hierarchy.delete(production.id)
    except HasChildren as exc:
        print("Delete rejected:", exc)

    # Employees and live filtering
    today = date.today()
    mes.register_employee(
        code="E1001", name="Zhou Ming", department_id=machining.id,
        position="CNC Operator", entry_date=datetime.combine(today, datetime.min.time()),
    )
    mes.register_employee(
        code="E1002", name="Wu Yan", department_id=assembly.id,
        position="Fitter", entry_date=datetime.now() - timedelta(days=40),
    )
    mes.register_employee(
        code="E1003", name="Qian Li", department_id=logistics.id,
        position="Forklift Driver", status=EmployeeStatus.ON_LEAVE,
    )

    employees = mes.employee_filter()
    employees.set_keyword("op")
    print("\nEmployees matching 'op':")
    pprint([employee.name for employee in employees])

    employees.reset()
    employees.set_date_range(today - timedelta(days=7), today)
    print("\nEmployees who joined during the last week:")
    pprint([employee.name for employee in employees])
    employees.close()


if __name__ == "__main__":
    main()

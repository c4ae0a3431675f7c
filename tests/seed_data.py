"""Reference rows shared by the service tests."""

from __future__ import annotations

from dispatchdesk.core.db import open_session
from dispatchdesk.models import (
    AppointmentApprover,
    Company,
    Contact,
    District,
    Employee,
    EquipmentModel,
    Merchandise,
    Site,
    SubDistrict,
    TicketStatus,
    WorkGiver,
    WorkType,
)

ASSIGNER = "emp-assigner"
CREATOR = "emp-creator"
APPROVER = "emp-approver"
SUPERADMIN = "emp-superadmin"
TECH_A = "emp-tech-a"
TECH_B = "emp-tech-b"
TECH_C = "emp-tech-c"

WORK_TYPE = "wt-pm"
STATUS_OPEN = "st-open"
STATUS_DONE = "st-done"
COMPANY = "0105551234567"
SITE = "site-bangna"
OTHER_SITE = "site-chiangmai"
CONTACT = "contact-somchai"
WORK_GIVER = "wg-pde"
INACTIVE_WORK_GIVER = "wg-retired"
MERCH_A = "merch-ups-1"
MERCH_B = "merch-ups-2"
MERCH_OTHER_SITE = "merch-ups-cm"


async def seed_reference_data() -> None:
    async with open_session() as session:
        session.add_all(
            [
                Employee(id=ASSIGNER, code="E001", name="Anan", nickname="Nan", role_level=2),
                Employee(id=CREATOR, code="E002", name="Busaba", role_level=0),
                Employee(id=APPROVER, code="E003", name="Chai", role_level=2),
                Employee(id=SUPERADMIN, code="E004", name="Darunee", role_level=3),
                Employee(id=TECH_A, code="T001", name="Ekkachai", nickname="Ek", role_level=0),
                Employee(id=TECH_B, code="T002", name="Fah", role_level=0),
                Employee(id=TECH_C, code="T003", name="Gun", role_level=0),
                Employee(id="emp-former", code="E099", name="Former", role_level=3, is_active=False),
                WorkType(id=WORK_TYPE, code="pm", name="Preventive maintenance"),
                TicketStatus(id=STATUS_OPEN, code="open", name="Open"),
                TicketStatus(id=STATUS_DONE, code="done", name="Done"),
                Company(tax_id=COMPANY, name_th="บริษัท ตัวอย่าง จำกัด", name_en="Example Co"),
                WorkGiver(id=WORK_GIVER, code="PDE", name="PDE"),
                WorkGiver(id=INACTIVE_WORK_GIVER, code="OLD", name="Retired", is_active=False),
                District(id=1012, name_th="เขตบางนา", name_en="Bang Na", province_id=1),
                District(id=5001, name_th="อำเภอเมืองเชียงใหม่", name_en="Mueang Chiang Mai", province_id=38),
                SubDistrict(id=101201, name_th="บางนาเหนือ", name_en="Bang Na Nuea", district_id=1012),
                EquipmentModel(id="model-ups", model="SRT3000", name="Smart-UPS", brand="APC", capacity="3kVA"),
            ]
        )
        await session.flush()
        session.add(AppointmentApprover(employee_id=APPROVER))
        session.add_all(
            [
                Site(
                    id=SITE,
                    name="Bang Na Office",
                    company_id=COMPANY,
                    address_detail="99 Bang Na-Trat Rd",
                    province_code=1,
                    district_code=1012,
                    subdistrict_code=101201,
                    postal_code="10260",
                ),
                Site(id=OTHER_SITE, name="Chiang Mai Branch", company_id=COMPANY, province_code=38),
            ]
        )
        await session.flush()
        session.add_all(
            [
                Contact(id=CONTACT, site_id=SITE, person_name="Somchai", phone=["0812345678"]),
                Merchandise(id=MERCH_A, serial_no="SN-001", model_id="model-ups", site_id=SITE),
                Merchandise(id=MERCH_B, serial_no="SN-002", model_id="model-ups", site_id=SITE),
                Merchandise(
                    id=MERCH_OTHER_SITE, serial_no="SN-900", model_id="model-ups", site_id=OTHER_SITE
                ),
            ]
        )
        await session.commit()


def ticket_payload(**overrides) -> dict:
    payload = {
        "ticket": {
            "work_type_id": WORK_TYPE,
            "assigner_id": ASSIGNER,
            "status_id": STATUS_OPEN,
            "details": "Replace UPS batteries",
        },
        "site": {"id": SITE},
        "contact": {"id": CONTACT},
        "appointment": {
            "appointment_date": "2026-11-02",
            "appointment_type": "half_morning",
        },
        "employee_ids": [{"id": TECH_A, "is_key": True}, TECH_B],
    }
    payload.update(overrides)
    return payload

from typing import List, Optional

from ..db import Database
from ..schemas.checklists import ChecklistTemplate


TABLE = "checklist_templates"


class ChecklistTemplateRepository:
    def __init__(self, db: Database):
        self.db = db

    def get_by_id(self, template_id: str) -> Optional[ChecklistTemplate]:
        row = self.db.find_by_id(TABLE, template_id)
        return ChecklistTemplate.from_row(row) if row else None

    def get_active(self, technician_id: Optional[str] = None) -> List[ChecklistTemplate]:
        where = {"isActive": 1}
        if technician_id:
            where["technicianId"] = technician_id
        rows = self.db.find_all(TABLE, where=where, order_by="name")
        return [ChecklistTemplate.from_row(row) for row in rows]

    def upsert(self, template: ChecklistTemplate) -> ChecklistTemplate:
        # sections and questions are stored as JSON text by the store
        self.db.upsert(TABLE, template.to_row())
        return template

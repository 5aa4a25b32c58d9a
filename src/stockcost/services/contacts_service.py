from __future__ import annotations

from typing import Optional

from stockcost.domain.errors import CustomerNotFoundError, SupplierNotFoundError, ValidationError
from stockcost.domain.models import Customer, Supplier


class ContactsService:
    def __init__(self, repo):
        self.repo = repo

    def add_supplier(self, name: str, country: Optional[str] = None) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Supplier name is required.", field="name")
        return self.repo.add_supplier(name, (country or "").strip() or None)

    def get_supplier(self, supplier_id: int) -> Supplier:
        s = self.repo.get_supplier(int(supplier_id))
        if not s:
            raise SupplierNotFoundError(supplier_id)
        return s

    def add_customer(self, name: str) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Customer name is required.", field="name")
        return self.repo.add_customer(name)

    def get_customer(self, customer_id: int) -> Customer:
        c = self.repo.get_customer(int(customer_id))
        if not c:
            raise CustomerNotFoundError(customer_id)
        return c

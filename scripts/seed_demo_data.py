"""
Seed script: populate a demo tenant for exercising inventory transfers.

What it creates:
- Users with one role each (owner, manager, finance, cashier) as members of the tenant.
- Stores (3): Principal, Sucursal Norte, Sucursal Sur.
- Products: N (default 50) with initial stock in the main store only.
- Approval rule: transfers worth 1000 or more need a manager, then finance.
- A handful of transfers: some auto-approved, some waiting for approval.

Run against a migrated database:
    python scripts/seed_demo_data.py --tenant-id <uuid> --products 50 --transfers 10

Prints a bearer token per user so the API can be called right away.
Intended for development environments only.
"""

# Add project root to sys.path so `app.*` imports work even if CWD changes
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
import random
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from app.core.exceptions import InsufficientInventoryError
from app.core.registry import build_approval_handlers
from app.database.database import SessionLocal
from app.modules.approvals.models import ApprovalObjectType, ApprovalRule
from app.modules.approvals.schemas import ApprovalRuleConditions, ApprovalRuleCreate
from app.modules.approvals.service import ApprovalService
from app.modules.auth.models import User, UserTenant
from app.modules.auth.utils import create_access_token
from app.modules.inventory.service import InventoryService
from app.modules.products.models import Product
from app.modules.stores.models import Store
from app.modules.transfers.schemas import TransferCreate
from app.modules.transfers.service import InventoryTransferService

DEMO_ROLES = ["owner", "manager", "finance", "cashier"]
STORES = [("Principal", "MAIN"), ("Sucursal Norte", "NORTH"), ("Sucursal Sur", "SOUTH")]
CATEGORIES = ["Granos", "Lacteos", "Bebidas", "Aseo", "Snacks"]


def create_members(db, tenant_id, domain: str):
    users = {}
    for role in DEMO_ROLES:
        email = f"{role}@{domain}"
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            user = User(email=email, full_name=f"{role.title()} Demo", is_active=True)
            db.add(user)
            db.flush()
        membership = db.query(UserTenant).filter(
            UserTenant.user_id == user.id, UserTenant.tenant_id == tenant_id
        ).first()
        if membership is None:
            db.add(UserTenant(user_id=user.id, tenant_id=tenant_id, roles=[role], is_active=True))
        users[role] = user
    db.commit()
    return users


def create_stores(db, tenant_id):
    stores = []
    for name, code in STORES:
        store = db.query(Store).filter(Store.tenant_id == tenant_id, Store.code == code).first()
        if store is None:
            store = Store(tenant_id=tenant_id, name=name, code=code)
            db.add(store)
        stores.append(store)
    db.commit()
    return stores


def create_products(db, tenant_id, main_store, product_count: int, owner_id):
    inventory = InventoryService(db)
    products = []
    for i in range(product_count):
        category = random.choice(CATEGORIES)
        sku = f"{category[:3].upper()}-{i:04d}"
        product = db.query(Product).filter(Product.tenant_id == tenant_id, Product.sku == sku).first()
        if product is None:
            base_price = Decimal(random.randint(500, 8000)) / Decimal(100)
            product = Product(
                tenant_id=tenant_id,
                name=f"{category} {i + 1}",
                sku=sku,
                price_base=base_price,
                price_sale=(base_price * Decimal("1.25")).quantize(Decimal("0.01"))
            )
            db.add(product)
            db.commit()

        if inventory.find_record(tenant_id, main_store.id, product.id) is None:
            inventory.create_or_update(
                tenant_id, main_store.id, product.id,
                quantity_on_hand=random.randint(50, 400),
                unit_cost=product.price_base,
                reorder_point=20,
                user_id=owner_id
            )
        products.append(product)
    return products


def create_transfer_rule(db, approvals: ApprovalService, tenant_id, owner_id):
    existing = db.query(ApprovalRule).filter(
        ApprovalRule.tenant_id == tenant_id,
        ApprovalRule.object_type == ApprovalObjectType.INVENTORY_TRANSFER
    ).first()
    if existing:
        return existing
    return approvals.create_rule(
        tenant_id,
        ApprovalRuleCreate(
            name="Large inventory transfers",
            description="Manager then finance sign-off for transfers worth 1000 or more",
            object_type=ApprovalObjectType.INVENTORY_TRANSFER,
            conditions=ApprovalRuleConditions(
                min_amount=Decimal("1000"),
                approval_levels=[
                    {"level": 1, "approver_roles": ["manager"], "min_approvals": 1},
                    {"level": 2, "approver_roles": ["finance"], "min_approvals": 1},
                ],
                expiry_hours=72
            )
        ),
        owner_id
    )


def create_transfers(db, tenant_id, stores, products, transfers_count: int, requester_id):
    approvals = ApprovalService(db, handlers=build_approval_handlers())
    service = InventoryTransferService(db, approvals=approvals)
    main_store, branches = stores[0], stores[1:]
    created = 0
    for _ in range(transfers_count):
        product = random.choice(products)
        try:
            service.create_transfer(tenant_id, requester_id, TransferCreate(
                source_store_id=main_store.id,
                destination_store_id=random.choice(branches).id,
                product_id=product.id,
                quantity=Decimal(random.randint(1, 40)),
                notes="Demo restock"
            ))
            created += 1
        except InsufficientInventoryError:
            continue
    return created


def main():
    parser = argparse.ArgumentParser(description="Seed inventory transfer demo data")
    parser.add_argument("--tenant-id", type=UUID, default=None)
    parser.add_argument("--domain", default="demo.pos")
    parser.add_argument("--products", type=int, default=50)
    parser.add_argument("--transfers", type=int, default=10)
    args = parser.parse_args()

    tenant_id = args.tenant_id or uuid4()
    db = SessionLocal()
    try:
        users = create_members(db, tenant_id, args.domain)
        stores = create_stores(db, tenant_id)

        print("Creating products and stock...")
        products = create_products(db, tenant_id, stores[0], args.products, users["owner"].id)
        print(f"Products ready: {len(products)}")

        rule = create_transfer_rule(db, ApprovalService(db), tenant_id, users["owner"].id)
        print(f"Approval rule: {rule.name}")

        print("Creating transfers...")
        created = create_transfers(db, tenant_id, stores, products, args.transfers, users["cashier"].id)
        print(f"Transfers created: {created}")

        print("\nSeed completed.")
        print(f"Tenant ID: {tenant_id}")
        print("Headers for API requests:")
        print(f"  X-Tenant-ID: {tenant_id}")
        for role, user in users.items():
            token = create_access_token({"sub": str(user.id)}, expires_delta=timedelta(hours=12))
            print(f"  {role:<8} Authorization: Bearer {token}")
    finally:
        db.close()


if __name__ == "__main__":
    main()

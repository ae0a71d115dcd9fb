# Overview: Flask CLI command groups for bootstrap, inspection, and ledger maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to the factory (PowerShell: $env:FLASK_APP="stockledger:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create missing tables (no-op for existing ones).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed
#   Idempotent demo data: one branch, admin/production/branch users, products,
#   stock records and one in-transit order.
#
# User inspection:
# - python -m flask users list
#   List users with role, branch and active status.
#
# Ledger inspection:
# - python -m flask ledger verify [--branch-id 1]
#   Check non-negative stock, min/max bounds and movement sums. Exit code 1 on problems.
# - python -m flask ledger history --product-id 1 --branch-id 1 [--limit 20]
#   Print the newest inventory history rows.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch, Order, OrderLine, Product, User
from .models.branches import ROLE_ADMIN, ROLE_BRANCH, ROLE_PRODUCTION, ROLES
from .services import stock_service
from .services.integrity_service import verify_stock_records
from .services.ledger_service import list_history
from .services.stock_service import find_stock_record


DEMO_PRODUCTS = (
    ("BRD-001", "White Bread", 250),
    ("CRS-001", "Butter Croissant", 400),
    ("CAK-001", "Chocolate Cake", 2500),
)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only inventory history!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed' for demo data.")


@system_group.command('seed')
@click.option('--branch-code', default='MAIN', help='Code of the demo branch')
@with_appcontext
def seed(branch_code):
    """
    Create demo data. Safe to run repeatedly.

    Creates:
    - Branch MAIN ("Main Branch")
    - Users: admin (admin), factory (production), cashier (branch, MAIN)
    - Three products with stock records at MAIN (20 units, min 5, max 50)
    - One in_transit order for MAIN, ready for confirm-delivery
    """
    click.echo("START Seeding demo data...")

    branch = db.session.query(Branch).filter_by(code=branch_code).first()
    if branch is None:
        branch = Branch(name="Main Branch", code=branch_code)
        db.session.add(branch)
        db.session.commit()
        click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id})")
    else:
        click.echo(f"PASS Using existing branch: {branch.name} (ID: {branch.id})")

    users = {}
    for username, role, branch_id in (
        ("admin", ROLE_ADMIN, None),
        ("factory", ROLE_PRODUCTION, None),
        ("cashier", ROLE_BRANCH, branch.id),
    ):
        user = db.session.query(User).filter_by(username=username).first()
        if user is None:
            user = User(username=username, role=role, branch_id=branch_id)
            db.session.add(user)
            db.session.commit()
            click.echo(f"PASS Created user: {username} ({role}, ID: {user.id})")
        users[role] = user

    products = []
    for code, name, price_cents in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(code=code).first()
        if product is None:
            product = Product(code=code, name=name, price_cents=price_cents)
            db.session.add(product)
            db.session.commit()
            click.echo(f"PASS Created product: {code} {name}")
        products.append(product)

    admin = users[ROLE_ADMIN]
    for product in products:
        if find_stock_record(product.id, branch.id) is not None:
            continue
        stock_service.create_stock_record(
            product_id=product.id,
            branch_id=branch.id,
            actor=admin,
            initial_stock=20,
            min_stock_level=5,
            max_stock_level=50,
        )
        click.echo(f"PASS Stocked {product.code} at {branch.code}")

    order_number = f"ORD-{branch.code}-0001"
    if db.session.query(Order).filter_by(order_number=order_number).first() is None:
        order = Order(order_number=order_number, branch_id=branch.id, status="in_transit")
        for product in products:
            order.lines.append(OrderLine(product_id=product.id, quantity=10, price_cents=product.price_cents))
        order.total_amount_cents = sum(line.quantity * line.price_cents for line in order.lines)
        db.session.add(order)
        db.session.commit()
        click.echo(f"PASS Created in-transit order {order_number} (ID: {order.id})")

    click.echo("DONE Seed complete")


@click.group('users')
def users_group():
    """User inspection commands."""


@users_group.command('list')
@click.option('--role', type=click.Choice(ROLES), default=None, help='Only users with this role')
@with_appcontext
def list_users(role):
    """List users with their role and branch scope."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found")
        return

    click.echo(f"{'ID':<5} {'Username':<20} {'Role':<12} {'Branch':<8} {'Active':<6}")
    click.echo("-" * 55)
    for user in users:
        branch = str(user.branch_id) if user.branch_id is not None else "-"
        active = "yes" if user.is_active else "no"
        click.echo(f"{user.id:<5} {user.username:<20} {user.role:<12} {branch:<8} {active:<6}")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection commands."""


@ledger_group.command('verify')
@click.option('--branch-id', type=int, default=None, help='Only check this branch')
@with_appcontext
def verify_ledger(branch_id):
    """
    Verify every stock record against its invariants.

    Exits with status 1 when any record is inconsistent so the command can
    gate deploys or cron alerts.
    """
    problems = verify_stock_records(branch_id=branch_id)
    if not problems:
        click.echo("PASS Stock ledger is consistent")
        return

    for problem in problems:
        click.echo(
            f"FAIL record={problem['stock_record_id']} product={problem['product_id']} "
            f"branch={problem['branch_id']} rule={problem['rule']}"
        )
    click.echo(f"FAIL {len(problems)} problem(s) found")
    raise SystemExit(1)


@ledger_group.command('history')
@click.option('--product-id', type=int, required=True)
@click.option('--branch-id', type=int, required=True)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def show_history(product_id, branch_id, limit):
    """Print the newest inventory history rows of one product at one branch."""
    rows, total = list_history(product_id=product_id, branch_id=branch_id, page=1, per_page=limit)
    if not rows:
        click.echo("No history found")
        return

    click.echo(f"{'ID':<6} {'Action':<20} {'Qty':>6} {'User':<6} {'Created':<25} Reference")
    click.echo("-" * 90)
    for row in rows:
        created = row.created_at.isoformat() if row.created_at else "-"
        click.echo(
            f"{row.id:<6} {row.action:<20} {row.quantity:>6} {row.created_by_user_id:<6} "
            f"{created:<25} {row.reference or ''}"
        )
    click.echo(f"Showing {len(rows)} of {total}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(ledger_group)

"""
Test fixtures and helper utilities for standalone test scripts.
Provides common setup, teardown, and test data creation functions.
"""

import sys
import os
import time
from contextlib import asynccontextmanager
from sqlalchemy import text

# Settings refuse to load without a secret
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from requestflow.models.database import Database, configure_sqlite
from requestflow.models.orm import Base
from requestflow.core.event_bus import EventBus
from requestflow.core.target_data import TargetDataAccessor
from requestflow.core.forms import FormService
from requestflow.core.definition_store import DefinitionStore
from requestflow.models.schemas import (
    BranchCondition,
    FormDefinitionCreate,
    FormFieldDefinition,
    FormRequestCreate,
    RequestType,
    StepFieldConfiguration,
    TransitionCondition,
    WorkflowDefinitionCreate,
    WorkflowStepConfiguration,
    WorkflowStepSpec,
    WorkflowStepType,
    WorkflowTransitionSpec,
)


# ============================================================================
# Color codes for terminal output
# ============================================================================

GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
CYAN = '\033[96m'
RESET = '\033[0m'


# ============================================================================
# Test output helpers
# ============================================================================

def print_test_header(test_name):
    """Print formatted test header"""
    print(f"\n{'='*70}")
    print(f"{CYAN}Running: {test_name}{RESET}")
    print(f"{'='*70}\n")


def print_pass(test_name):
    """Print test pass message"""
    print(f"{GREEN}✓ PASS{RESET}: {test_name}")


def print_fail(test_name, error):
    """Print test failure message with error details"""
    print(f"{RED}✗ FAIL{RESET}: {test_name}")
    print(f"{RED}  Error: {error}{RESET}")


def print_info(message):
    """Print informational message"""
    print(f"{BLUE}ℹ {message}{RESET}")


def print_summary(tests_passed, tests_failed):
    """Print test summary"""
    print(f"\n{'='*70}")
    total = tests_passed + tests_failed
    if tests_failed == 0:
        print(f"{GREEN}✓ ALL TESTS PASSED{RESET}: {tests_passed}/{total}")
    else:
        print(f"{RED}✗ SOME TESTS FAILED{RESET}: {tests_passed} passed, {tests_failed} failed")
    print(f"{'='*70}\n")


async def run_tests(title, tests):
    """Run (name, coroutine function) pairs and print a summary; returns an exit code"""
    print_test_header(title)

    tests_passed = 0
    tests_failed = 0

    for test_name, test_func in tests:
        try:
            await test_func()
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            import traceback
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


def _remove_sqlite_files(db_path):
    for path in (db_path, f"{db_path}-shm", f"{db_path}-wal", f"{db_path}-journal"):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                pass


# ============================================================================
# Database setup/teardown
# ============================================================================

async def create_test_database(db_path="./test_requestflow.db"):
    """
    Create a fresh store database.
    Deletes existing database and creates new schema.
    """
    from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
    from sqlalchemy import event

    _remove_sqlite_files(db_path)

    # Create a new engine for this specific test database
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        future=True,
        connect_args={"timeout": 10.0, "check_same_thread": False}
    )

    # Enable foreign keys for SQLite
    @event.listens_for(test_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    test_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with test_engine.begin() as conn:
        await configure_sqlite(conn)
        await conn.run_sync(Base.metadata.create_all)

    return Database(test_engine, test_session_factory)


TARGET_CONNECTION = "crm"

# Seeded target rows; the next customer identity is 42
SEED_CUSTOMERS = [
    (7, "Grace Hopper", "grace@example.com", 250.0, 1),
    (41, "Ada Lovelace", "ada@example.com", 100.0, 1),
]
SEED_ORDER_LINES = [
    (1, 1, "A-100", 2),
    (1, 2, "B-200", 1),
]


async def create_target_database(db_path):
    """
    Create the target database that requests are applied to.

    Tables:
        customers    identity primary key
        order_lines  composite primary key (OrderId, LineNo)
        audit_notes  no primary key
    """
    from sqlalchemy.ext.asyncio import create_async_engine

    _remove_sqlite_files(db_path)
    url = f"sqlite+aiosqlite:///{db_path}"
    target_engine = create_async_engine(url)

    async with target_engine.begin() as conn:
        await conn.execute(text(
            "CREATE TABLE customers ("
            " Id INTEGER PRIMARY KEY AUTOINCREMENT,"
            " Name TEXT NOT NULL,"
            " Email TEXT,"
            " Amount REAL,"
            " IsActive INTEGER NOT NULL DEFAULT 1)"
        ))
        await conn.execute(text(
            "CREATE TABLE order_lines ("
            " OrderId INTEGER NOT NULL,"
            " LineNo INTEGER NOT NULL,"
            " Sku TEXT NOT NULL,"
            " Quantity INTEGER NOT NULL,"
            " PRIMARY KEY (OrderId, LineNo))"
        ))
        await conn.execute(text("CREATE TABLE audit_notes (Note TEXT, Author TEXT)"))

        for row in SEED_CUSTOMERS:
            await conn.execute(
                text("INSERT INTO customers (Id, Name, Email, Amount, IsActive) VALUES (:id, :name, :email, :amount, :active)"),
                dict(zip(["id", "name", "email", "amount", "active"], row)),
            )
        for row in SEED_ORDER_LINES:
            await conn.execute(
                text("INSERT INTO order_lines (OrderId, LineNo, Sku, Quantity) VALUES (:order_id, :line_no, :sku, :qty)"),
                dict(zip(["order_id", "line_no", "sku", "qty"], row)),
            )
        await conn.execute(text("INSERT INTO audit_notes (Note, Author) VALUES ('seeded', 'setup')"))

    await target_engine.dispose()
    return url


async def cleanup_database(db: Database):
    """Clean up test database"""
    try:
        await db.close()
    except Exception:
        pass


# ============================================================================
# Workflow definition builders
# ============================================================================

def start_step(step_id="start", name="Start"):
    return WorkflowStepSpec(step_id=step_id, step_type=WorkflowStepType.START, name=name)


def end_step(step_id="end", name="End"):
    return WorkflowStepSpec(step_id=step_id, step_type=WorkflowStepType.END, name=name)


def approval_step(step_id, name=None, roles=None, is_required=True, field_configurations=None, **configuration):
    """Approval step; keyword arguments go to the step configuration"""
    return WorkflowStepSpec(
        step_id=step_id,
        step_type=WorkflowStepType.APPROVAL,
        name=name or step_id.replace("_", " ").title(),
        assigned_roles=roles if roles is not None else ["Manager"],
        is_required=is_required,
        configuration=WorkflowStepConfiguration(**configuration),
        field_configurations={
            field: StepFieldConfiguration(**config) for field, config in (field_configurations or {}).items()
        },
    )


def branch_step(step_id, conditions, name=None):
    """
    Branch step.

    Args:
        conditions: (field_name, operator, value, target_step_id) tuples in evaluation order
    """
    return WorkflowStepSpec(
        step_id=step_id,
        step_type=WorkflowStepType.BRANCH,
        name=name or step_id.replace("_", " ").title(),
        configuration=WorkflowStepConfiguration(
            branch_conditions=[
                BranchCondition(field_name=f, operator=op, value=v, target_step_id=t)
                for f, op, v, t in conditions
            ]
        ),
    )


def parallel_step(step_id, members, require_all=True, name=None):
    return WorkflowStepSpec(
        step_id=step_id,
        step_type=WorkflowStepType.PARALLEL,
        name=name or step_id.replace("_", " ").title(),
        configuration=WorkflowStepConfiguration(
            parallel_step_ids=list(members),
            require_all_parallel_steps=require_all,
        ),
    )


def transition(from_step_id, to_step_id, condition=None):
    """
    Transition between two steps.

    Args:
        condition: optional (field_name, operator, value) tuple
    """
    return WorkflowTransitionSpec(
        from_step_id=from_step_id,
        to_step_id=to_step_id,
        condition=(
            TransitionCondition(field_name=condition[0], operator=condition[1], value=condition[2])
            if condition else None
        ),
    )


def single_approval_workflow(roles=None, **configuration):
    """Start -> manager_approval -> End"""
    steps = [start_step(), approval_step("manager_approval", roles=roles, **configuration), end_step()]
    transitions = [transition("start", "manager_approval"), transition("manager_approval", "end")]
    return steps, transitions


# ============================================================================
# Test data factories
# ============================================================================

async def create_test_form(session, table_name="customers", connection_name=TARGET_CONNECTION, name=None):
    """
    Register a form against a target table and commit it.

    Returns:
        Created FormDefinition
    """
    form = await FormService(session).create_form(FormDefinitionCreate(
        name=name or f"{table_name} maintenance",
        connection_name=connection_name,
        table_name=table_name,
        fields=[FormFieldDefinition(name="Name", label="Customer name", is_required=True)],
    ))
    await session.commit()
    return form


async def create_test_definition(session, form_id, steps=None, transitions=None, is_active=True, name="Test workflow"):
    """
    Create (and commit) a workflow definition for a form.
    Defaults to a single Manager approval.
    """
    if steps is None:
        steps, default_transitions = single_approval_workflow()
        transitions = default_transitions if transitions is None else transitions

    definition = await DefinitionStore(session).create_definition(WorkflowDefinitionCreate(
        form_definition_id=form_id,
        name=name,
        steps=steps,
        transitions=transitions or [],
        is_active=is_active,
        created_by="designer",
    ))
    await session.commit()
    return definition


async def create_test_request(
    service,
    form_id,
    request_type=RequestType.INSERT,
    field_values=None,
    original_values=None,
    requested_by="alice",
    comments=None,
):
    """
    Create a request through the RequestService.

    Returns:
        Created FormRequest
    """
    if field_values is None and request_type == RequestType.INSERT:
        field_values = {"Name": "Jane Doe", "Email": "jane@example.com", "Amount": "1500.50", "IsActive": "true"}

    return await service.create_request(FormRequestCreate(
        form_definition_id=form_id,
        request_type=request_type,
        field_values=field_values or {},
        original_values=original_values or {},
        comments=comments,
        requested_by=requested_by,
        requested_by_name=requested_by.title(),
    ))


# ============================================================================
# Event bus helpers
# ============================================================================

class EventCollector:
    """Helper class to collect events for testing"""

    def __init__(self):
        self.events = []

    async def handler(self, data: dict):
        """Event handler that collects events"""
        self.events.append(data)

    def typed_handler(self, event_type):
        """Handler that records the event type alongside the data"""
        async def handler(data: dict):
            self.events.append({"event_type": event_type.value, **data})
        handler.__name__ = f"collect_{event_type.name.lower()}"
        return handler

    def subscribe_all(self, event_bus):
        from requestflow.models.schemas import EventType
        for event_type in EventType:
            event_bus.subscribe(event_type, self.typed_handler(event_type))

    def get_events(self):
        """Get collected events"""
        return self.events

    def types(self):
        return [event.get("event_type") for event in self.events]

    def clear(self):
        """Clear collected events"""
        self.events = []

    def count(self):
        """Get count of collected events"""
        return len(self.events)

    def find_event(self, **kwargs):
        """Find event matching criteria"""
        for event in self.events:
            match = True
            for key, value in kwargs.items():
                if event.get(key) != value:
                    match = False
                    break
            if match:
                return event
        return None


# ============================================================================
# Test context managers
# ============================================================================

class TestContext:
    """Context manager for setting up test environment"""

    __test__ = False
    _context_counter = 0

    def __init__(self, db_path=None, start_event_bus=True):
        # Generate unique database paths for each context
        TestContext._context_counter += 1
        suffix = f"{TestContext._context_counter}_{int(time.time()*1000)}"
        self.db_path = db_path or f"./test_requestflow_{suffix}.db"
        self.target_db_path = f"./test_target_{suffix}.db"
        self.db = None
        self.event_bus = None
        self.target_data = None
        self.start_event_bus = start_event_bus

    async def __aenter__(self):
        """Setup test environment"""
        self.db = await create_test_database(self.db_path)
        target_url = await create_target_database(self.target_db_path)
        self.target_data = TargetDataAccessor({TARGET_CONNECTION: target_url}, echo=False)
        self.event_bus = EventBus(db=self.db)
        if self.start_event_bus:
            await self.event_bus.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Cleanup test environment"""
        if self.event_bus:
            await self.event_bus.stop()

        if self.target_data:
            await self.target_data.close()

        if self.db:
            await cleanup_database(self.db)

        _remove_sqlite_files(self.db_path)
        _remove_sqlite_files(self.target_db_path)

    @asynccontextmanager
    async def get_session(self):
        """Get a new database session as an async context manager"""
        # Use the test database's session factory, not the global one
        session = self.db.session_factory()
        try:
            yield session
        finally:
            await session.close()

    async def target_rows(self, table, where=None):
        """Rows of a target table as dicts"""
        return await self.target_data.query(TARGET_CONNECTION, table, None, where)


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_equal(actual, expected, message=""):
    """Assert two values are equal"""
    if actual != expected:
        raise AssertionError(
            f"{message}\nExpected: {expected}\nActual: {actual}"
        )


def assert_not_equal(actual, expected, message=""):
    """Assert two values are not equal"""
    if actual == expected:
        raise AssertionError(
            f"{message}\nExpected values to be different, but both are: {actual}"
        )


def assert_true(condition, message=""):
    """Assert condition is true"""
    if not condition:
        raise AssertionError(f"{message}\nExpected: True\nActual: False")


def assert_false(condition, message=""):
    """Assert condition is false"""
    if condition:
        raise AssertionError(f"{message}\nExpected: False\nActual: True")


def assert_in(item, container, message=""):
    """Assert item is in container"""
    if item not in container:
        raise AssertionError(
            f"{message}\nExpected {item} to be in {container}"
        )


def assert_not_in(item, container, message=""):
    """Assert item is not in container"""
    if item in container:
        raise AssertionError(
            f"{message}\nExpected {item} to not be in {container}"
        )


def assert_raises(exception_type, func, *args, **kwargs):
    """Assert function raises specific exception"""
    try:
        func(*args, **kwargs)
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )


async def assert_raises_async(exception_type, coro):
    """Assert async function raises specific exception"""
    try:
        await coro
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )

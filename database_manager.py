"""Database coordination layer encapsulating seat allocation and cancellation."""

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import threading

from errors import BookingRejected, FailureReason, StoreUnavailableError
from models import (
    Base, Seat, Category, Booking,
    BookingRecord, AllocationResult, CancellationResult, MAX_ID,
)
from seat_selection import SeatSelection, SeatsByCount, select_seats, validate_customer

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_NAMES = ('adult', 'child', 'retired')
CONTENTION_RETRIES = 1
SQLITE_BUSY_TIMEOUT_SEC = 30


def _configure_sqlite(engine):
    """Serialize SQLite writers at BEGIN so a stable read really holds the pool."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # pysqlite's own transaction handling would defer BEGIN until the first write
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def default_category_name(index: int) -> str:
    if index < len(DEFAULT_CATEGORY_NAMES):
        return DEFAULT_CATEGORY_NAMES[index]
    return f"category_{index}"


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and the booking transactions.

    Every public operation runs as one transaction on the calling thread's
    session and re-reads the store; nothing about seats or bookings is cached
    between calls. Expected negative outcomes come back as result objects
    carrying a FailureReason. Only StoreUnavailableError is raised.
    """

    def __init__(self, database_url: str, *, retry_on_contention: bool = True):
        if make_url(database_url).get_backend_name() == 'sqlite':
            self.engine = create_engine(
                database_url,
                connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SEC, "check_same_thread": False},
                echo=False
            )
            _configure_sqlite(self.engine)
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )
        self.session_factory = scoped_session(sessionmaker(bind=self.engine))
        self.retry_on_contention = retry_on_contention
        self._stable = threading.local()

        Base.metadata.create_all(self.engine)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Release the thread's session and every pooled connection."""
        self.session_factory.remove()
        self.engine.dispose()

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise.

        BookingRejected and IntegrityError are expected outcomes and pass
        through untouched after the rollback. Any other store error becomes
        StoreUnavailableError.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except (BookingRejected, IntegrityError):
            self._rollback_or_fail(session)
            raise
        except SQLAlchemyError as e:
            self._rollback_quietly(session)
            logger.error(f"Database error: {e}")
            raise StoreUnavailableError(str(e)) from e
        except Exception as e:
            self._rollback_quietly(session)
            logger.error(f"Unexpected error in transaction: {e}")
            raise
        finally:
            self._stable.held = False
            session.close()

    def _rollback_quietly(self, session):
        try:
            session.rollback()
        except SQLAlchemyError as e:
            logger.warning(f"Rollback failed: {e}")

    def _rollback_or_fail(self, session):
        """Roll back after an expected outcome; a failed rollback means the store is gone."""
        try:
            session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")
            raise StoreUnavailableError(str(e)) from e

    # Catalog

    def initialize_catalog(
        self,
        seat_count: int,
        prices: Sequence[float],
        names: Optional[Sequence[str]] = None
    ) -> Tuple[bool, str]:
        """Drop and recreate the schema, then seed seats 1..seat_count and the price list."""
        if isinstance(seat_count, bool) or not isinstance(seat_count, int) or seat_count < 1:
            return False, "seat_count must be a positive integer"
        if not prices:
            return False, "price list must not be empty"
        for price in prices:
            if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
                return False, "prices must be positive numbers"
        if names is None:
            names = [default_category_name(i) for i in range(len(prices))]
        if len(names) != len(prices):
            return False, "names and prices must have the same length"
        if any(not isinstance(name, str) or not name.strip() or len(name) > 32 for name in names):
            return False, "category names must be non-empty strings of at most 32 characters"
        if len(set(names)) != len(names):
            return False, "category names must be unique"

        self.release_stable_seats()
        try:
            Base.metadata.drop_all(self.engine)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Catalog schema reset failed: {e}")
            raise StoreUnavailableError(str(e)) from e

        try:
            with self.get_session() as session:
                session.add_all([
                    Category(id=index, name=name, price=float(price))
                    for index, (name, price) in enumerate(zip(names, prices))
                ])
                session.add_all([Seat(id=number, available=True) for number in range(1, seat_count + 1)])
        except IntegrityError as e:
            return False, f"database integrity error: {e.orig}"

        logger.info(f"Catalog initialized: {seat_count} seats, prices {list(prices)}")
        return True, f"catalog initialized with {seat_count} seats and {len(prices)} categories"

    def is_catalog_initialized(self) -> bool:
        with self.get_session() as session:
            return session.query(Category).count() > 0 and session.query(Seat).count() > 0

    def get_price_list(self) -> List[float]:
        with self.get_session() as session:
            return [price for (price,) in session.query(Category.price).order_by(Category.id).all()]

    def get_categories(self) -> List[Dict[str, Any]]:
        with self.get_session() as session:
            return [
                {"id": category.id, "name": category.name, "price": category.price}
                for category in session.query(Category).order_by(Category.id).all()
            ]

    def _category_prices(self, session) -> Dict[int, float]:
        return dict(session.query(Category.id, Category.price).all())

    # Availability

    def get_available_seats(self, stable: bool = False) -> List[int]:
        """Return available seat numbers in ascending order.

        In stable mode the read runs with row locks in a transaction that stays
        open on this thread; the seats stay available until the thread's next
        engine call (normally book_seats) commits or rolls it back. Other
        allocations block on the pool meanwhile, so never leave it open across
        user think time. release_stable_seats() ends it without booking.
        """
        if not stable:
            with self.get_session() as session:
                return self._select_available(session, lock=False)

        session = self.session_factory()
        try:
            seats = self._select_available(session, lock=True)
        except SQLAlchemyError as e:
            self._rollback_quietly(session)
            session.close()
            self._stable.held = False
            logger.error(f"Stable availability read failed: {e}")
            raise StoreUnavailableError(str(e)) from e
        self._stable.held = True
        return seats

    @property
    def holds_stable_seats(self) -> bool:
        return getattr(self._stable, 'held', False)

    def release_stable_seats(self):
        """Roll back a pending stable read on this thread, if any."""
        if not self.holds_stable_seats:
            return
        session = self.session_factory()
        self._rollback_quietly(session)
        session.close()
        self._stable.held = False

    def _select_available(self, session, lock: bool) -> List[int]:
        query = session.query(Seat.id).filter(Seat.available.is_(True)).order_by(Seat.id)
        if lock:
            # SELECT FOR UPDATE keeps the rows until this transaction ends
            query = query.with_for_update()
        return [seat_id for (seat_id,) in query.all()]

    # Allocation

    def book_seats(self, customer: str, selection: SeatSelection) -> AllocationResult:
        """Book seats for a customer all-or-nothing; bookings come back ascending by seat."""
        try:
            validate_customer(customer)
            selection.validate()
        except BookingRejected as e:
            self.release_stable_seats()
            logger.info(f"Booking rejected for {customer!r}: {e.message}")
            return AllocationResult(reason=e.reason, message=e.message)

        if selection.total == 0:
            self.release_stable_seats()
            return AllocationResult()

        attempts = 1 + (CONTENTION_RETRIES if self.retry_on_contention else 0)
        for attempt in range(1, attempts + 1):
            try:
                with self.get_session() as session:
                    bookings = self._allocate(session, customer, selection)
            except IntegrityError as e:
                logger.warning(
                    f"Booking contention for {customer!r} (attempt {attempt}/{attempts}): {e.orig}"
                )
                continue
            except BookingRejected as e:
                if e.reason is FailureReason.CONTENTION:
                    logger.warning(
                        f"Booking contention for {customer!r} (attempt {attempt}/{attempts}): {e.message}"
                    )
                    continue
                logger.info(f"Booking rejected for {customer!r}: {e.message}")
                return AllocationResult(reason=e.reason, message=e.message)

            logger.info(f"Booked seats {[b.seat for b in bookings]} for {customer!r}")
            return AllocationResult(bookings=bookings)

        return AllocationResult(
            reason=FailureReason.CONTENTION,
            message="booking failed due to concurrent contention",
        )

    def _allocate(self, session, customer: str, selection: SeatSelection) -> List[BookingRecord]:
        prices = self._category_prices(session)
        unknown = [category for category in selection.categories_used() if category not in prices]
        if unknown:
            raise BookingRejected(FailureReason.UNKNOWN_CATEGORY, f"unknown categories: {unknown}")

        if isinstance(selection, SeatsByCount):
            available = self._select_available(session, lock=True)
            assignments = select_seats(available, selection)
        else:
            assignments = selection.assignments()
            self._lock_named_seats(session, [seat for seat, _ in assignments])

        return self._write_bookings(session, customer, assignments, prices)

    def _lock_named_seats(self, session, seat_ids: List[int]):
        locked_seats = session.query(Seat).filter(
            Seat.id.in_(seat_ids)
        ).with_for_update().all()

        missing = sorted(set(seat_ids) - {seat.id for seat in locked_seats})
        if missing:
            raise BookingRejected(FailureReason.UNKNOWN_SEAT, f"unknown seats: {missing}")

        unavailable = sorted(seat.id for seat in locked_seats if not seat.available)
        if unavailable:
            raise BookingRejected(FailureReason.SEAT_UNAVAILABLE, f"seats unavailable: {unavailable}")

    def _write_bookings(
        self,
        session,
        customer: str,
        assignments: List[Tuple[int, int]],
        prices: Dict[int, float]
    ) -> List[BookingRecord]:
        """Insert the booking rows and flip their seats, inside the caller's transaction."""
        rows = [
            Booking(seat_id=seat, customer=customer, category_id=category)
            for seat, category in assignments
        ]
        session.add_all(rows)
        # A concurrent winner on any seat surfaces here as a unique violation
        session.flush()

        seat_ids = [seat for seat, _ in assignments]
        flipped = session.query(Seat).filter(
            Seat.id.in_(seat_ids),
            Seat.available.is_(True)
        ).update({Seat.available: False}, synchronize_session=False)
        if flipped != len(seat_ids):
            raise BookingRejected(FailureReason.CONTENTION, "seat state changed during booking")

        return sorted(
            (
                BookingRecord(
                    id=row.id,
                    seat=row.seat_id,
                    customer=row.customer,
                    category=row.category_id,
                    price=prices[row.category_id],
                )
                for row in rows
            ),
            key=lambda booking: booking.seat,
        )

    # Queries

    def get_bookings(self, customer: str = '') -> List[BookingRecord]:
        """Return the bookings of one customer, or of everybody when customer is empty."""
        with self.get_session() as session:
            query = session.query(Booking, Category.price).join(
                Category, Booking.category_id == Category.id
            )
            if customer:
                query = query.filter(Booking.customer == customer)
            return [
                BookingRecord(
                    id=booking.id,
                    seat=booking.seat_id,
                    customer=booking.customer,
                    category=booking.category_id,
                    price=price,
                )
                for booking, price in query.order_by(Booking.seat_id).all()
            ]

    # Cancellation

    def cancel_bookings(self, bookings: Iterable[Any]) -> CancellationResult:
        """Cancel bookings all-or-nothing.

        Each entry needs ``seat``, ``customer`` and ``category`` attributes
        (a BookingRecord works). The stored booking for the seat must match
        the customer and category exactly; the first mismatch aborts and
        nothing is cancelled. A seat named twice is rejected up front as
        DUPLICATE_SEAT.
        """
        entries = list(bookings)
        try:
            self._validate_cancellation(entries)
        except BookingRejected as e:
            self.release_stable_seats()
            logger.info(f"Cancellation rejected: {e.message}")
            return CancellationResult(reason=e.reason, message=e.message)

        if not entries:
            self.release_stable_seats()
            return CancellationResult()

        try:
            with self.get_session() as session:
                cancelled = self._cancel(session, entries)
        except BookingRejected as e:
            logger.info(f"Cancellation rejected: {e.message}")
            return CancellationResult(reason=e.reason, message=e.message)
        except IntegrityError as e:
            logger.warning(f"Cancellation contention: {e.orig}")
            return CancellationResult(
                reason=FailureReason.CONTENTION,
                message="cancellation failed due to concurrent contention",
            )

        logger.info(f"Cancelled bookings on seats {cancelled}")
        return CancellationResult(cancelled=cancelled)

    def _validate_cancellation(self, entries: List[Any]):
        seen = set()
        for index, entry in enumerate(entries):
            seat = getattr(entry, 'seat', None)
            category = getattr(entry, 'category', None)
            customer = getattr(entry, 'customer', None)
            if isinstance(seat, bool) or not isinstance(seat, int) or not 1 <= seat <= MAX_ID:
                raise BookingRejected(FailureReason.INVALID_REQUEST, f"entry {index}: seat must be between 1 and {MAX_ID}")
            if isinstance(category, bool) or not isinstance(category, int) or not 0 <= category <= MAX_ID:
                raise BookingRejected(
                    FailureReason.INVALID_REQUEST, f"entry {index}: category must be between 0 and {MAX_ID}"
                )
            validate_customer(customer)
            if seat in seen:
                raise BookingRejected(FailureReason.DUPLICATE_SEAT, f"seat {seat} named twice")
            seen.add(seat)

    def _cancel(self, session, entries: List[Any]) -> List[int]:
        matched = []
        for entry in entries:
            stored = session.query(Booking).filter(
                Booking.seat_id == entry.seat
            ).with_for_update().one_or_none()

            if (stored is None or stored.customer != entry.customer
                    or stored.category_id != entry.category):
                raise BookingRejected(
                    FailureReason.BOOKING_MISMATCH,
                    f"no booking on seat {entry.seat} for {entry.customer!r} in category {entry.category}",
                )
            matched.append(stored)

        booking_ids = [booking.id for booking in matched]
        seat_ids = [booking.seat_id for booking in matched]

        session.query(Booking).filter(
            Booking.id.in_(booking_ids)
        ).delete(synchronize_session=False)

        restored = session.query(Seat).filter(
            Seat.id.in_(seat_ids),
            Seat.available.is_(False)
        ).update({Seat.available: True}, synchronize_session=False)
        if restored != len(seat_ids):
            raise BookingRejected(FailureReason.CONTENTION, "seat state changed during cancellation")

        return sorted(seat_ids)

    # Administration

    def get_seat_status(self) -> Dict[str, Any]:
        """Return seat aggregates and re-check the seat/booking invariant against both tables."""
        with self.get_session() as session:
            rows = session.query(Seat.id, Seat.available, Booking.id).outerjoin(
                Booking, Booking.seat_id == Seat.id
            ).order_by(Seat.id).all()
            booking_count = session.query(Booking).count()

        available = sum(1 for _, is_available, _ in rows if is_available)
        referenced = sum(1 for _, _, booking_id in rows if booking_id is not None)
        # available must be true exactly when no booking references the seat
        inconsistent = [
            seat_id for seat_id, is_available, booking_id in rows
            if is_available == (booking_id is not None)
        ]

        return {
            "total_seats": len(rows),
            "available_seats": available,
            "booked_seats": len(rows) - available,
            "bookings": booking_count,
            "inconsistent_seats": inconsistent,
            "invariants_valid": not inconsistent and referenced == booking_count,
        }

    def reset_bookings(self) -> Tuple[bool, Dict[str, int]]:
        """Clear every booking and mark every seat available, keeping the catalog."""
        self.release_stable_seats()
        with self.get_session() as session:
            deleted_bookings = session.query(Booking).delete(synchronize_session=False)
            updated_seats = session.query(Seat).filter(
                Seat.available.is_(False)
            ).update({Seat.available: True}, synchronize_session=False)

        logger.info(f"Reset: {deleted_bookings} bookings cleared, {updated_seats} seats released")
        return True, {
            "bookings_cleared": deleted_bookings,
            "seats_reset": updated_seats,
        }

    def health_check(self) -> Dict:
        """Report database connectivity and catalog size; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                seat_count = session.query(Seat).count()
                category_count = session.query(Category).count()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "seats": seat_count,
                    "categories": category_count
                }
        except StoreUnavailableError as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

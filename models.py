"""ORM model definitions describing the seat booking schema."""

from sqlalchemy import Column, Integer, String, Float, Boolean, ForeignKey, Index
from sqlalchemy.orm import declarative_base, relationship
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import FailureReason

Base = declarative_base()

CUSTOMER_MAX_LENGTH = 64
# largest value an INTEGER column holds on every supported backend
MAX_ID = 2 ** 31 - 1


class Seat(Base):
    __tablename__ = 'seats'

    id = Column(Integer, primary_key=True, autoincrement=False)
    available = Column(Boolean, nullable=False, default=True)

    booking = relationship('Booking', back_populates='seat', uselist=False)

    __table_args__ = (
        Index('idx_seats_available', 'available'),
    )


class Category(Base):
    __tablename__ = 'categories'

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(32), nullable=False, unique=True)
    price = Column(Float, nullable=False)

    bookings = relationship('Booking', back_populates='category')


class Booking(Base):
    __tablename__ = 'bookings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    seat_id = Column('seat', Integer, ForeignKey('seats.id'), nullable=False, unique=True)
    customer = Column(String(CUSTOMER_MAX_LENGTH), nullable=False)
    category_id = Column('category', Integer, ForeignKey('categories.id'), nullable=False)

    seat = relationship('Seat', back_populates='booking')
    category = relationship('Category', back_populates='bookings')

    __table_args__ = (
        Index('idx_bookings_customer', 'customer'),
    )


@dataclass(frozen=True)
class BookingRecord:
    """Detached view of a booking row, priced from its category."""
    id: Optional[int]
    seat: int
    customer: str
    category: int
    price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seat": self.seat,
            "customer": self.customer,
            "category": self.category,
            "price": self.price,
        }


@dataclass
class AllocationResult:
    bookings: List[BookingRecord] = field(default_factory=list)
    reason: Optional[FailureReason] = None
    message: str = ''

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass
class CancellationResult:
    cancelled: List[int] = field(default_factory=list)
    reason: Optional[FailureReason] = None
    message: str = ''

    @property
    def ok(self) -> bool:
        return self.reason is None

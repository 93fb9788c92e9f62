"""HTTP entrypoint for the seat booking backend."""

from flask import Flask, request, jsonify
from flask_cors import CORS
import logging
import os
from dotenv import load_dotenv
from typing import Any, Dict, List, Optional, Tuple

load_dotenv()
from database_manager import DatabaseManager
from errors import FailureReason, StoreUnavailableError
from models import BookingRecord, MAX_ID
from seat_selection import SeatsByCount, SeatsById

logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'))
logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///seats.db')
DEMO_SEAT_COUNT = int(os.getenv('DEMO_SEAT_COUNT', '50'))
DEMO_PRICES = [float(p) for p in os.getenv('DEMO_PRICES', '12.5,8.0,9.5').split(',') if p.strip()]


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def failure_response(reason: FailureReason, message: str):
    """Map an engine rejection onto 400 (bad request) or 409 (state conflict)."""
    status = 400 if reason.is_validation else 409
    return jsonify({"error": message, "reason": reason.value}), status


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_id(value: Any) -> bool:
    """Integer that fits the store's INTEGER id columns."""
    return is_int(value) and 0 <= value <= MAX_ID


def validate_counts(counts: Any) -> Tuple[Optional[List[int]], Optional[Tuple[Any, int]]]:
    """Check the per-category counts array; range checks are left to the engine."""
    if not isinstance(counts, list):
        return None, bad_request("counts must be a JSON array of integers")

    for index, count in enumerate(counts):
        if not is_int(count):
            return None, bad_request("each count must be an integer", details={"index": index})

    return counts, None


def validate_seat_lists(seat_lists: Any) -> Tuple[Optional[List[List[int]]], Optional[Tuple[Any, int]]]:
    """Check the per-category seat arrays (one array of seat numbers per category)."""
    if not isinstance(seat_lists, list):
        return None, bad_request("seats must be a JSON array of seat arrays, one per category")

    for category, seats in enumerate(seat_lists):
        if not isinstance(seats, list):
            return None, bad_request("each category entry must be an array of seats", details={"category": category})
        for index, seat in enumerate(seats):
            if not is_id(seat):
                return None, bad_request(
                    f"each seat must be an integer between 0 and {MAX_ID}",
                    details={"category": category, "index": index}
                )

    return seat_lists, None


def validate_cancellations(entries: Any) -> Tuple[Optional[List[BookingRecord]], Optional[Tuple[Any, int]]]:
    """Turn the bookings array into BookingRecord keys for the cancellation flow."""
    if not isinstance(entries, list):
        return None, bad_request("bookings must be a JSON array")

    keys: List[BookingRecord] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            return None, bad_request("each booking must be an object", details={"index": index})
        seat, category, customer = entry.get('seat'), entry.get('category'), entry.get('customer')
        if not is_id(seat) or not is_id(category):
            return None, bad_request(f"seat and category must be integers between 0 and {MAX_ID}", details={"index": index})
        if not isinstance(customer, str):
            return None, bad_request("customer must be a string", details={"index": index})
        keys.append(BookingRecord(id=None, seat=seat, customer=customer, category=category))

    return keys, None


def parse_prices(raw: Any) -> Optional[List[float]]:
    if not isinstance(raw, list) or not raw:
        return None
    if any(isinstance(p, bool) or not isinstance(p, (int, float)) for p in raw):
        return None
    return [float(p) for p in raw]


def initialize_demo_catalog(db: DatabaseManager):
    """Seed an empty store so local demos have usable data."""
    try:
        if db.is_catalog_initialized():
            logger.info("ℹ️ Catalog already initialized, keeping existing bookings")
            return
        success, message = db.initialize_catalog(DEMO_SEAT_COUNT, DEMO_PRICES)
        if success:
            logger.info(f"✅ Pre-initialized demo catalog: {message}")
        else:
            logger.error(f"❌ Failed to initialize demo catalog: {message}")
    except StoreUnavailableError as e:
        logger.error(f"❌ Failed to initialize demo catalog: {e}")


def create_app(db: Optional[DatabaseManager] = None, *, seed_demo: bool = True) -> Flask:
    """Build the Flask app around one DatabaseManager shared by all request threads.

    Called with no arguments it connects to DATABASE_URL and seeds the demo
    catalog, which is what Gunicorn runs: gunicorn 'app:create_app()'
    """
    app = Flask(__name__)
    CORS(app)

    if db is None:
        db = DatabaseManager(DATABASE_URL)
    app.extensions['seat_db'] = db

    if seed_demo:
        initialize_demo_catalog(db)

    @app.errorhandler(StoreUnavailableError)
    def store_unavailable(error):
        logger.error(f"Store unavailable: {error}")
        return jsonify({"error": "store unavailable", "details": str(error)}), 503

    # API Endpoints

    @app.route('/catalog/initialize', methods=['POST'])
    def initialize_catalog():
        """Reset the store with a fresh seat pool and price list."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        seat_count = data.get('seat_count')
        if not is_int(seat_count):
            return bad_request("seat_count must be an integer")

        prices = parse_prices(data.get('prices'))
        if prices is None:
            return bad_request("prices must be a non-empty JSON array of numbers")

        names = data.get('names')
        if names is not None and (not isinstance(names, list) or not all(isinstance(n, str) for n in names)):
            return bad_request("names must be a JSON array of strings")

        success, message = db.initialize_catalog(seat_count, prices, names)
        if success:
            logger.info(f"Initialized catalog with {seat_count} seats")
            return jsonify({
                "message": message,
                "seat_count": seat_count,
                "prices": prices
            }), 201
        return bad_request(message)

    @app.route('/catalog/prices', methods=['GET'])
    def get_price_list():
        return jsonify({
            "prices": db.get_price_list(),
            "categories": db.get_categories()
        })

    @app.route('/seats/available', methods=['GET'])
    def get_available_seats():
        """Advisory snapshot; seats may be taken before the caller books them."""
        seats = db.get_available_seats(stable=False)
        return jsonify({"seats": seats, "count": len(seats)})

    @app.route('/seats', methods=['GET'])
    def get_seat_status():
        """Return the live seat summary and invariant check."""
        return jsonify(db.get_seat_status())

    @app.route('/bookings', methods=['POST'])
    def book_seats():
        """Book seats either by per-category counts or by explicit seat numbers."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        customer = data.get('customer')
        if not isinstance(customer, str):
            return bad_request("customer must be a string")

        if 'seats' in data:
            seat_lists, seat_error = validate_seat_lists(data.get('seats'))
            if seat_error:
                return seat_error
            selection = SeatsById(seat_lists)
        else:
            counts, count_error = validate_counts(data.get('counts'))
            if count_error:
                return count_error
            adjoining = data.get('adjoining', False)
            if not isinstance(adjoining, bool):
                return bad_request("adjoining must be a boolean")
            selection = SeatsByCount(counts, adjoining)

        result = db.book_seats(customer, selection)

        if result.ok:
            return jsonify({"bookings": [b.to_dict() for b in result.bookings]}), 201
        return failure_response(result.reason, result.message)

    @app.route('/bookings', methods=['GET'])
    def get_bookings():
        customer = request.args.get('customer', '')
        bookings = db.get_bookings(customer)
        return jsonify({"bookings": [b.to_dict() for b in bookings]})

    @app.route('/bookings/cancel', methods=['POST'])
    def cancel_bookings():
        """Cancel bookings all-or-nothing."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        keys, key_error = validate_cancellations(data.get('bookings'))
        if key_error:
            return key_error

        result = db.cancel_bookings(keys)

        if result.ok:
            return jsonify({"message": "bookings cancelled", "seats": result.cancelled}), 200
        return failure_response(result.reason, result.message)

    @app.route('/reset', methods=['POST'])
    def reset_bookings():
        """Administrative endpoint clearing every booking."""
        if request.data:
            data, error_response = require_json_object()
            if error_response:
                return error_response
            if data:
                return bad_request("reset payload must be empty")

        _, result = db.reset_bookings()
        response = {"message": "all bookings cleared", **result}
        return jsonify(response), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and catalog size."""
        return jsonify(db.health_check())

    return app


if __name__ == '__main__':
    # Production: gunicorn 'app:create_app()' builds the same app per worker
    app = create_app()

    logger.info(f"""
    ================================
    SEAT BOOKING SYSTEM
    ================================
    Database: {DATABASE_URL.split('@')[-1]}
    Concurrency: row-level locking with SELECT FOR UPDATE
    ================================
    """)

    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)

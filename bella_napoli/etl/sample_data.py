"""Synthetic Bella Napoli data: menu, locations, customers, orders, reviews and inventory.

Generators take a ``random.Random`` so callers decide on determinism.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from bella_napoli.db.schema import (
    dim_category,
    dim_customer,
    dim_employee,
    dim_ingredient,
    dim_location,
    dim_menu_item,
    dim_size,
)
from bella_napoli.procedures.order_validation import round_cents

CATEGORIES = [
    (1, "Pizza", "Wood-fired Neapolitan pizzas", 1),
    (2, "Appetizers", "Starters and sides", 2),
    (3, "Salads", "Fresh salads", 3),
    (4, "Pasta", "House-made pasta", 4),
    (5, "Desserts", "Sweet endings", 5),
    (6, "Beverages", "Drinks", 6),
]

# item_id, category_id, name, price, cost, prep minutes, calories, vegetarian, vegan, gluten free
MENU = [
    (1, 1, "Margherita", 14.99, 4.10, 15, 850, True, False, False),
    (2, 1, "Pepperoni", 16.99, 4.80, 15, 1020, False, False, False),
    (3, 1, "Quattro Formaggi", 17.99, 5.40, 16, 1100, True, False, False),
    (4, 1, "Diavola", 17.49, 5.10, 15, 1050, False, False, False),
    (5, 1, "Vegetariana", 16.49, 4.60, 16, 880, True, False, False),
    (6, 1, "Prosciutto e Funghi", 18.99, 5.90, 17, 990, False, False, False),
    (7, 1, "Marinara", 12.99, 3.20, 14, 720, True, True, False),
    (8, 2, "Garlic Knots", 6.99, 1.50, 10, 480, True, False, False),
    (9, 2, "Bruschetta", 8.49, 2.10, 8, 320, True, True, False),
    (10, 2, "Fried Calamari", 11.99, 4.20, 12, 610, False, False, False),
    (11, 3, "Caesar Salad", 9.99, 2.80, 7, 470, False, False, False),
    (12, 3, "Caprese Salad", 10.49, 3.30, 6, 390, True, False, True),
    (13, 4, "Spaghetti Carbonara", 15.99, 4.40, 18, 980, False, False, False),
    (14, 4, "Penne Arrabbiata", 13.99, 3.10, 16, 760, True, True, False),
    (15, 4, "Lasagna", 16.49, 5.00, 20, 1150, False, False, False),
    (16, 5, "Tiramisu", 7.99, 2.20, 3, 490, True, False, False),
    (17, 5, "Cannoli", 6.49, 1.80, 3, 380, True, False, False),
    (18, 5, "Gelato", 5.99, 1.40, 2, 270, True, False, True),
    (19, 6, "San Pellegrino", 3.49, 0.90, 1, 0, True, True, True),
    (20, 6, "Italian Soda", 3.99, 0.80, 2, 180, True, True, True),
    (21, 6, "House Chianti", 9.99, 3.50, 1, 125, True, True, True),
]

SIZES = [
    (1, "Small", 10, 0.80),
    (2, "Medium", 12, 1.00),
    (3, "Large", 14, 1.25),
    (4, "Family", 18, 1.60),
    (5, "Regular", None, 1.00),
]

LOCATIONS = [
    (1, "DT-001", "Bella Napoli Downtown", "120 N State St", "Chicago", "IL", "60602", 80),
    (2, "WL-002", "Bella Napoli West Loop", "845 W Randolph St", "Chicago", "IL", "60607", 65),
    (3, "RR-003", "Bella Napoli River Road", "3200 River Rd", "Des Plaines", "IL", "60018", 50),
]

INGREDIENTS = [
    (1, "Mozzarella", "lb", 4.25, "Lombardi Dairy", True, 14),
    (2, "Tomato Sauce", "gal", 6.10, "San Marzano Imports", True, 30),
    (3, "Pepperoni", "lb", 5.75, "Vienna Provisions", True, 45),
    (4, "00 Flour", "lb", 0.95, "Caputo", False, 365),
    (5, "Basil", "bunch", 1.20, "Green City Farms", True, 5),
    (6, "Olive Oil", "gal", 28.50, "Frantoio Muraglia", False, 540),
    (7, "Prosciutto", "lb", 14.80, "Parma Direct", True, 60),
    (8, "Mushrooms", "lb", 3.40, "Green City Farms", True, 7),
    (9, "Parmesan", "lb", 11.90, "Lombardi Dairy", False, 180),
    (10, "Romaine", "head", 1.35, "Green City Farms", True, 10),
    (11, "Espresso Beans", "lb", 12.00, "Intelligentsia", False, 120),
    (12, "Mascarpone", "lb", 7.60, "Lombardi Dairy", True, 21),
]

EMPLOYEE_ROLES = ["Manager", "Chef", "Cook", "Cook", "Server", "Server", "Driver", "Cashier"]

FIRST_NAMES = [
    "Alex", "Maria", "James", "Sofia", "Daniel", "Olivia", "Marco", "Emma", "Luca",
    "Chloe", "Noah", "Giulia", "Ethan", "Ava", "Matteo", "Mia", "Liam", "Isabella",
    "Samuel", "Grace",
]
LAST_NAMES = [
    "Rossi", "Smith", "Bianchi", "Johnson", "Romano", "Garcia", "Ricci", "Brown",
    "Conti", "Miller", "Greco", "Davis", "Marino", "Wilson", "Bruno", "Moore",
]
CITIES = ["Chicago", "Chicago", "Chicago", "Evanston", "Oak Park", "Des Plaines", "Skokie"]
STREETS = ["Main St", "Oak Ave", "Lake Shore Dr", "Milwaukee Ave", "Clark St", "Halsted St"]

ORDER_TYPES = ["DELIVERY", "PICKUP", "DINE_IN"]
ORDER_TYPE_WEIGHTS = [0.35, 0.35, 0.30]
PAYMENTS = ["CREDIT", "CASH", "MOBILE"]
PAYMENT_WEIGHTS = [0.55, 0.15, 0.30]
OPEN_HOURS = list(range(11, 22))
HOUR_WEIGHTS = [6, 9, 7, 3, 2, 3, 7, 10, 10, 7, 3]

REVIEW_SOURCES = ["Google", "Yelp", "App", "Website"]
REVIEW_TEXT = {
    1: ["Terrible experience, the pizza arrived cold and soggy.", "Worst service ever, rude staff."],
    2: ["Delivery was late and the crust was burnt.", "Overpriced and disappointing."],
    3: ["Decent pizza but the wait was slow.", "Okay food, nothing special."],
    4: ["Great pizza and friendly staff.", "Tasty pasta, quick pickup."],
    5: ["Amazing authentic pizza, best in Chicago!", "Excellent food and wonderful service, love it."],
}
RATING_WEIGHTS = [0.05, 0.07, 0.15, 0.35, 0.38]

INVENTORY_DAYS = 30
REORDER_POINT = 25.0
REORDER_QUANTITY = 80.0


@dataclass(frozen=True)
class SeedConfig:
    seed: int
    days: int
    customers: int
    tax_rate: float


def build_dimensions(rng: random.Random, today: date, cfg: SeedConfig) -> dict:
    customers = []
    for cid in range(1, cfg.customers + 1):
        first, last = rng.choice(FIRST_NAMES), rng.choice(LAST_NAMES)
        customers.append(
            {
                "customer_id": cid,
                "first_name": first,
                "last_name": last,
                "email": f"{first.lower()}.{last.lower()}{cid}@example.com",
                "phone": f"312-555-{rng.randint(0, 9999):04d}",
                "address": f"{rng.randint(100, 9999)} {rng.choice(STREETS)}",
                "city": rng.choice(CITIES),
                "state": "IL",
                "zip_code": f"60{rng.randint(600, 699)}",
                "registration_date": today - timedelta(days=rng.randint(0, 730)),
                "loyalty_points": 0,
                "preferred_order_type": rng.choices(ORDER_TYPES, ORDER_TYPE_WEIGHTS)[0],
                "birthday": date(rng.randint(1960, 2004), rng.randint(1, 12), rng.randint(1, 28)),
            }
        )

    employees = []
    eid = 1
    for _ in LOCATIONS:
        for role in EMPLOYEE_ROLES:
            employees.append(
                {
                    "employee_id": eid,
                    "first_name": rng.choice(FIRST_NAMES),
                    "last_name": rng.choice(LAST_NAMES),
                    "role": role,
                    "hourly_rate": round(rng.uniform(15.0, 32.0), 2),
                    "hire_date": today - timedelta(days=rng.randint(30, 2000)),
                    "is_active": True,
                }
            )
            eid += 1

    return {
        dim_category: [
            {"category_id": c, "category_name": n, "description": d, "display_order": o}
            for c, n, d, o in CATEGORIES
        ],
        dim_menu_item: [
            {
                "item_id": i,
                "category_id": c,
                "item_name": n,
                "description": None,
                "base_price": p,
                "cost_to_make": cost,
                "prep_time_minutes": prep,
                "calories": cal,
                "is_vegetarian": veg,
                "is_vegan": vegan,
                "is_gluten_free": gf,
                "is_available": True,
                "created_date": today - timedelta(days=cfg.days + 30),
            }
            for i, c, n, p, cost, prep, cal, veg, vegan, gf in MENU
        ],
        dim_size: [
            {"size_id": s, "size_name": n, "size_inches": inches, "price_multiplier": m}
            for s, n, inches, m in SIZES
        ],
        dim_location: [
            {
                "location_id": lid,
                "location_code": code,
                "location_name": name,
                "address": addr,
                "city": city,
                "state": state,
                "zip_code": zip_code,
                "phone": f"312-555-01{lid:02d}",
                "opening_time": time(11, 0),
                "closing_time": time(22, 0),
                "seating_capacity": seats,
                "has_delivery": True,
            }
            for lid, code, name, addr, city, state, zip_code, seats in LOCATIONS
        ],
        dim_ingredient: [
            {
                "ingredient_id": i,
                "ingredient_name": n,
                "unit_of_measure": u,
                "cost_per_unit": c,
                "supplier": s,
                "is_perishable": p,
                "shelf_life_days": d,
            }
            for i, n, u, c, s, p, d in INGREDIENTS
        ],
        dim_employee: employees,
        dim_customer: customers,
    }


def generate_order(
    rng: random.Random,
    order_id: int,
    location_id: int,
    ts: datetime,
    customer_id: int,
    tax_rate: float,
    first_item_id: int,
) -> tuple[dict, list[dict]]:
    """One order with 1-4 lines; ``first_item_id`` numbers its lines."""
    pizzas = [m for m in MENU if m[1] == 1]
    others = [m for m in MENU if m[1] != 1]
    n_lines = rng.randint(1, 4)
    picks = rng.sample(pizzas, k=min(len(pizzas), max(1, n_lines // 2 + rng.randint(0, 1))))
    picks += rng.sample(others, k=max(0, n_lines - len(picks)))

    items = []
    for offset, menu in enumerate(picks):
        item_id, category_id, _, price = menu[0], menu[1], menu[2], menu[3]
        size_id = rng.choice([1, 2, 3, 3, 4]) if category_id == 1 else 5
        unit_price = round_cents(price * SIZES[size_id - 1][3])
        qty = rng.choice([1, 1, 1, 2, 2, 3])
        items.append(
            {
                "order_item_id": first_item_id + offset,
                "order_id": order_id,
                "item_id": item_id,
                "size_id": size_id,
                "quantity": qty,
                "unit_price": unit_price,
                "line_total": round_cents(unit_price * qty),
                "special_requests": None,
            }
        )

    order_type = rng.choices(ORDER_TYPES, ORDER_TYPE_WEIGHTS)[0]
    subtotal = round_cents(sum(i["line_total"] for i in items))
    tax = round_cents(subtotal * tax_rate)
    tip = 0.0 if order_type == "PICKUP" else round_cents(subtotal * rng.choice([0, 0.1, 0.15, 0.18, 0.2]))
    ready = ts + timedelta(minutes=rng.randint(12, 30))
    order = {
        "order_id": order_id,
        "customer_id": customer_id,
        "employee_id": (location_id - 1) * len(EMPLOYEE_ROLES) + rng.randint(1, len(EMPLOYEE_ROLES)),
        "location_id": location_id,
        "order_timestamp": ts,
        "order_type": order_type,
        "subtotal": subtotal,
        "tax_amount": tax,
        "tip_amount": tip,
        "discount_amount": 0.0,
        "total_amount": round_cents(subtotal + tax + tip),
        "payment_method": rng.choices(PAYMENTS, PAYMENT_WEIGHTS)[0],
        "order_status": "COMPLETED",
        "delivery_address": (
            f"{rng.randint(100, 9999)} {rng.choice(STREETS)}" if order_type == "DELIVERY" else None
        ),
        "estimated_ready_time": ts + timedelta(minutes=20),
        "actual_ready_time": ready,
        "delivery_time": ready + timedelta(minutes=rng.randint(10, 35)) if order_type == "DELIVERY" else None,
        "special_instructions": None,
    }
    return order, items


def generate_review(rng: random.Random, review_id: int, order: dict, now: datetime) -> dict:
    rating = rng.choices([1, 2, 3, 4, 5], RATING_WEIGHTS)[0]
    return {
        "review_id": review_id,
        "order_id": order["order_id"],
        "customer_id": order["customer_id"],
        "location_id": order["location_id"],
        "review_date": min(now, order["order_timestamp"] + timedelta(hours=rng.randint(2, 72))),
        "overall_rating": rating,
        "food_rating": max(1, min(5, rating + rng.choice([-1, 0, 0, 1]))),
        "service_rating": max(1, min(5, rating + rng.choice([-1, 0, 0, 1]))),
        "delivery_rating": rating if order["order_type"] == "DELIVERY" else None,
        "review_text": rng.choice(REVIEW_TEXT[rating]),
        "review_source": rng.choice(REVIEW_SOURCES),
    }


def generate_history(rng: random.Random, now: datetime, cfg: SeedConfig) -> tuple[list, list, list]:
    orders: list[dict] = []
    items: list[dict] = []
    reviews: list[dict] = []
    order_id, item_id, review_id = 1, 1, 1
    for days_back in range(cfg.days, -1, -1):
        day = now.date() - timedelta(days=days_back)
        for location_id, *_ in LOCATIONS:
            n = rng.randint(10, 22) + (6 if day.weekday() >= 5 else 0)
            for _ in range(n):
                ts = datetime.combine(
                    day,
                    time(rng.choices(OPEN_HOURS, HOUR_WEIGHTS)[0], rng.randint(0, 59), rng.randint(0, 59)),
                )
                if ts > now:
                    continue
                order, lines = generate_order(
                    rng, order_id, location_id, ts, rng.randint(1, cfg.customers), cfg.tax_rate, item_id
                )
                orders.append(order)
                items.extend(lines)
                order_id += 1
                item_id += len(lines)

                if rng.random() < 0.18:
                    reviews.append(generate_review(rng, review_id, order, now))
                    review_id += 1
    orders.sort(key=lambda o: o["order_timestamp"])
    return orders, items, reviews


def generate_inventory(rng: random.Random, today: date) -> list[dict]:
    rows = []
    inventory_id = 1
    for location_id, *_ in LOCATIONS:
        for ingredient_id, *_ in INGREDIENTS:
            on_hand = rng.uniform(60.0, 120.0)
            for days_back in range(INVENTORY_DAYS, -1, -1):
                used = rng.uniform(3.0, 12.0)
                wasted = rng.uniform(0.0, 1.5)
                received = REORDER_QUANTITY if on_hand <= REORDER_POINT else 0.0
                on_hand = max(0.0, on_hand + received - used - wasted)
                rows.append(
                    {
                        "inventory_id": inventory_id,
                        "location_id": location_id,
                        "ingredient_id": ingredient_id,
                        "record_date": today - timedelta(days=days_back),
                        "quantity_on_hand": round(on_hand, 2),
                        "quantity_used": round(used, 2),
                        "quantity_received": round(received, 2),
                        "quantity_wasted": round(wasted, 2),
                        "reorder_point": REORDER_POINT,
                        "reorder_quantity": REORDER_QUANTITY,
                    }
                )
                inventory_id += 1
    return rows


def loyalty_points(orders: list[dict]) -> dict[int, int]:
    points: dict[int, int] = {}
    for o in orders:
        points[o["customer_id"]] = points.get(o["customer_id"], 0) + int(o["total_amount"])
    return points


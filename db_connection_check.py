from sqlalchemy import create_engine, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from pharmacy_pos.config import settings
from pharmacy_pos.models import Customer, Order, OrderStatus, Product


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            products = conn.execute(select(func.count()).select_from(Product)).scalar()
            customers = conn.execute(select(func.count()).select_from(Customer)).scalar()
            held = conn.execute(
                select(func.count()).select_from(Order).where(Order.status == OrderStatus.HELD)
            ).scalar()
        print("DB connection OK")
        print(f"products={products} customers={customers} held_orders={held}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()

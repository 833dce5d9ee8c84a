from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from eventcalc import models  # noqa: F401
from eventcalc.config import settings
from eventcalc.db import Base


def main() -> None:
    database_url = settings.database_url
    print(f"EVENTCALC_DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            present = set(inspect(conn).get_table_names())
        print("DB connection OK")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return
    missing = sorted(set(Base.metadata.tables) - present)
    if missing:
        print("Missing tables: " + ", ".join(missing))
    else:
        print("All tables present")


if __name__ == "__main__":
    main()

# File: config/init_db.py

from dealsign.config import load_settings
from dealsign.db.models import Base
from dealsign.db.session import configure_engine

if __name__ == "__main__":
    settings = load_settings()
    print("Creating signature tables...")
    engine = configure_engine(settings["DATABASE_URL"])
    Base.metadata.create_all(bind=engine)
    print("Tables created.")

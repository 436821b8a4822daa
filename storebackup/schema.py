from sqlalchemy.engine import Engine

from .models import Base


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)

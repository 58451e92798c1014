import os
from collections.abc import Generator

import pytest
from dotenv import load_dotenv

load_dotenv()

POSTGRES_IMAGE = "pgvector/pgvector:pg17"


@pytest.fixture(autouse=True)
def __env_setup():  # type:ignore
    # Tests set provider variables, restore the environment after each one.
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(scope="session")
def postgres_container() -> Generator[object, None, None]:
    # Deferred import: docker is only needed by the integration tests.
    from testcontainers.postgres import PostgresContainer  # type:ignore

    container = PostgresContainer(
        image=POSTGRES_IMAGE,
        username="pgembed",
        password="my-password",
        dbname="pgembed",
        driver=None,
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"could not start PostgreSQL with docker: {e}")
    yield container
    container.stop()


@pytest.fixture
def db_url(postgres_container) -> str:  # type:ignore
    return postgres_container.get_connection_url()  # type:ignore

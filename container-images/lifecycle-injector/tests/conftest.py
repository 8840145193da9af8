import pytest

import mutate


@pytest.fixture()
def app():
    app = mutate.create_app(TESTING=True)
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def config(app):
    return app.config

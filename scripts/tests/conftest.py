# tests/conftest.py
import os
import pytest


@pytest.fixture(scope="session", autouse=True)
def set_env_vars():
    os.environ["HOMEanalysismgr"] = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
    pythonpath = os.environ.get("PYTHONPATH", "")
    os.environ["PYTHONPATH"] = f"{pythonpath}:{os.path.abspath(os.path.join(os.path.dirname(__file__), '../../ush/python'))}"

# tests/conftest.py
from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

import rate_of_return_end_to_end as rr

HEADER = ["run", "security", "year", "price", "delta", "isSplit", "isBust", "yield", "avgRateOfReturn"]
SECURITIES = ["Pioneer", "Atlas", "Beacon", "Cobalt"]


def simulation_frame(n_rows: int, seed: int, first_run: int = 1) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    security = rng.choice(SECURITIES, size=n_rows)
    year = rng.integers(1, 11, size=n_rows).astype(float)
    price = rng.uniform(50, 150, size=n_rows).round(2)
    delta = rng.uniform(-20, 20, size=n_rows).round(2)
    is_split = rng.random(n_rows) < 0.2
    is_bust = rng.random(n_rows) < 0.15
    yld = rng.uniform(0, 6, size=n_rows).round(2)
    bonus = np.array([SECURITIES.index(s) for s in security]) * 0.01
    label = 0.05 + 0.003 * delta + 0.004 * yld + bonus - 0.08 * is_bust + rng.normal(0, 0.005, n_rows)
    return pd.DataFrame({
        "run": np.arange(first_run, first_run + n_rows),
        "security": security,
        "year": year,
        "price": price,
        "delta": delta,
        "isSplit": is_split,
        "isBust": is_bust,
        "yield": yld,
        "avgRateOfReturn": label,
    })[HEADER]


def write_simulation_csvs(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    simulation_frame(160, seed=7).to_csv(directory / rr.TRAIN_FILE, index=False)
    simulation_frame(40, seed=11, first_run=161).to_csv(directory / rr.TEST_FILE, index=False)
    return directory


@pytest.fixture(scope="session")
def data_dir(tmp_path_factory) -> Path:
    return write_simulation_csvs(tmp_path_factory.mktemp("simulations"))


@pytest.fixture
def fresh_data_dir(tmp_path: Path) -> Path:
    """Per-test copy, for tests that write the model artifact."""
    return write_simulation_csvs(tmp_path / "simulations")


@pytest.fixture(scope="session")
def config(data_dir: Path) -> rr.RunConfig:
    return rr.RunConfig(data_dir=data_dir)


@pytest.fixture(scope="session")
def train_table(config: rr.RunConfig) -> pd.DataFrame:
    return rr.load_simulations(config.train_path)


@pytest.fixture(scope="session")
def test_table(config: rr.RunConfig) -> pd.DataFrame:
    return rr.load_simulations(config.test_path)


@pytest.fixture(scope="session")
def fitted_model(train_table, config):
    return rr.train(train_table, config)

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stock Rate of Return — End-to-End Regression Pipeline
=====================================================
A single, runnable script that:
  1) Locates StockPriceSimulation_train.csv / _test.csv (4 directories above the cwd by default)
  2) Loads them with an explicit positional schema
  3) One-hot encodes Security / IsSplit / IsBust, drops Run, concatenates the rest into one feature vector
  4) Trains a gradient-boosted tree regressor (seed 0, reproducible)
  5) Evaluates on the test file (R2 / RMSE / MSE / MAE / loss)
  6) Predicts a single literal simulation record
  7) Saves the fitted pipeline + schema to RrtRegressionModel.zip
  8) Reports permutation feature importance (change in R2, 10 permutations)

Usage:
    python rate_of_return_end_to_end.py --data_dir path/to/csvs
    python rate_of_return_end_to_end.py --score_csv new.csv --output_csv scored.csv
"""

from __future__ import annotations

import argparse
import logging
import math
import sys
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import joblib
import numpy as np
import pandas as pd

# Headless plots saved to files
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

# Sklearn
from sklearn.base import clone
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import GradientBoostingRegressor, RandomForestRegressor
from sklearn.inspection import permutation_importance
from sklearn.linear_model import LinearRegression
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder

# Optional GBMs — offered as regressors only if installed
try:
    from xgboost import XGBRegressor
    XGB_OK = True
except ImportError:
    XGB_OK = False

try:
    from lightgbm import LGBMRegressor
    LGBM_OK = True
except ImportError:
    LGBM_OK = False

logger = logging.getLogger(__name__)
warnings.filterwarnings("ignore", category=UserWarning)

RNG_SEED = 0
DATA_DIR_LEVELS = 4
TRAIN_FILE = "StockPriceSimulation_train.csv"
TEST_FILE = "StockPriceSimulation_test.csv"
MODEL_FILE = "RrtRegressionModel.zip"
PERMUTATION_COUNT = 10

ID_COLUMN = "run"
LABEL_COLUMN = "avg_rate_of_return"
FEATURES_COLUMN = "Features"
CATEGORICAL_COLUMNS = ("security", "is_split", "is_bust")
OUT_OF_RANGE = "OutOfRange"

# ----------------------------- Schema -----------------------------

@dataclass(frozen=True)
class ColumnSpec:
    name: str
    kind: str  # "int" | "float" | "bool" | "str"
    index: int  # position in the source CSV

# Source column -> field binding is positional; header names in the CSV are ignored.
SCHEMA: Tuple[ColumnSpec, ...] = (
    ColumnSpec("run", "int", 0),
    ColumnSpec("security", "str", 1),
    ColumnSpec("year", "float", 2),
    ColumnSpec("price", "float", 3),
    ColumnSpec("delta", "float", 4),
    ColumnSpec("is_split", "bool", 5),
    ColumnSpec("is_bust", "bool", 6),
    ColumnSpec("yield", "float", 7),
    ColumnSpec(LABEL_COLUMN, "float", 8),
)

KIND_DTYPES = {"int": "int64", "float": "float64", "bool": "bool", "str": "object"}
BOOL_LITERALS = {"true": True, "false": False}


@dataclass(frozen=True)
class SimulationRecord:
    """One simulation run. `yield_` maps to the `yield` column."""
    run: int
    security: str
    year: float
    price: float
    delta: float
    is_split: bool
    is_bust: bool
    yield_: float
    avg_rate_of_return: float = float("nan")

    def as_row(self) -> Dict[str, object]:
        return {spec.name: getattr(self, "yield_" if spec.name == "yield" else spec.name) for spec in SCHEMA}


@dataclass(frozen=True)
class PredictionResult:
    avg_rate_of_return: float


@dataclass(frozen=True)
class RegressionMetrics:
    r_squared: float
    root_mean_squared_error: float
    mean_squared_error: float
    mean_absolute_error: float
    loss_function: float


@dataclass
class FeatureTable:
    """Training data after the fitted transform stage (no estimator applied)."""
    matrix: np.ndarray
    label: np.ndarray
    column_names: List[str]  # "<column>-<runtime type>" of the transformed view


# The canonical record from the test set: 137,Pioneer,10,92,15,False,False,4,0.109963825208794
SAMPLE_RECORD = SimulationRecord(
    run=137, security="Pioneer", year=10, price=92, delta=15,
    is_split=False, is_bust=False, yield_=4, avg_rate_of_return=0.109963825208794,
)

# ----------------------------- Configuration -----------------------------

@dataclass(frozen=True)
class RunConfig:
    data_dir: Path
    train_file: str = TRAIN_FILE
    test_file: str = TEST_FILE
    model_file: str = MODEL_FILE
    seed: int = RNG_SEED
    regressor: str = "fasttree"
    permutation_count: int = PERMUTATION_COUNT
    cache_dir: Optional[Path] = None
    plot_path: Optional[Path] = None

    @property
    def train_path(self) -> Path:
        return self.data_dir / self.train_file

    @property
    def test_path(self) -> Path:
        return self.data_dir / self.test_file

    @property
    def model_path(self) -> Path:
        return self.data_dir / self.model_file

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RunConfig":
        data_dir = Path(args.data_dir) if args.data_dir else resolve_up(Path.cwd(), DATA_DIR_LEVELS)
        return cls(
            data_dir=data_dir,
            seed=args.seed,
            regressor=args.regressor,
            permutation_count=args.permutation_count,
            cache_dir=Path(args.cache_dir) if args.cache_dir else None,
            plot_path=Path(args.plot_path) if args.plot_path else None,
        )

# ----------------------------- Errors -----------------------------

class MissingDataFileError(FileNotFoundError):
    def __init__(self, role: str, path: Path):
        super().__init__(f"{role} data not found at {path}")
        self.role = role
        self.path = path


class SimulationParseError(ValueError):
    def __init__(self, column: str, line: int, value: object):
        super().__init__(f"Cannot parse column '{column}' at line {line}: {value!r}")
        self.column = column
        self.line = line
        self.value = value

# ----------------------------- Regressors -----------------------------

@dataclass
class RegressorSpec:
    name: str
    factory: Callable[[int], object]


def _fast_tree(seed: int) -> GradientBoostingRegressor:
    # FastTree defaults: 100 trees, 20 leaves, lr 0.2, >= 10 samples per leaf
    return GradientBoostingRegressor(
        n_estimators=100, max_leaf_nodes=20, learning_rate=0.2,
        min_samples_leaf=10, random_state=seed,
    )


def regressor_specs() -> Dict[str, RegressorSpec]:
    """Regressors interchangeable behind the feature pipeline."""
    specs = [
        RegressorSpec("fasttree", _fast_tree),
        RegressorSpec("fastforest", lambda seed: RandomForestRegressor(
            n_estimators=100, max_leaf_nodes=20, min_samples_leaf=10, random_state=seed, n_jobs=1)),
        RegressorSpec("ols", lambda seed: LinearRegression()),
    ]
    if LGBM_OK:
        specs.append(RegressorSpec("lightgbm", lambda seed: LGBMRegressor(
            n_estimators=100, num_leaves=20, learning_rate=0.2, min_child_samples=10,
            random_state=seed, n_jobs=1, verbose=-1)))
    if XGB_OK:
        specs.append(RegressorSpec("xgboost", lambda seed: XGBRegressor(
            tree_method="hist", n_estimators=100, max_leaves=20, learning_rate=0.2,
            random_state=seed, n_jobs=1)))
    return {spec.name: spec for spec in specs}


def make_regressor(name: str, seed: int):
    specs = regressor_specs()
    if name not in specs:
        raise ValueError(f"Unknown regressor '{name}'. Available: {', '.join(sorted(specs))}")
    return specs[name].factory(seed)

# ----------------------------- Paths & Loading -----------------------------

def resolve_up(start: Path, levels: int) -> Path:
    """Move up `levels` directories; stops at the filesystem root instead of failing."""
    current = Path(start).absolute()
    for _ in range(levels):
        if current.parent == current:
            break
        current = current.parent
    return current


def locate_data_files(config: RunConfig) -> Tuple[Path, Path]:
    if not config.train_path.exists():
        raise MissingDataFileError("Training", config.train_path)
    if not config.test_path.exists():
        raise MissingDataFileError("Test", config.test_path)
    return config.train_path, config.test_path


def _coerce(raw: pd.Series, spec: ColumnSpec, line_offset: int, allow_empty: bool = False) -> pd.Series:
    values = raw.astype(object).str.strip()
    if spec.kind == "str":
        return values
    if spec.kind == "bool":
        converted = values.str.lower().map(BOOL_LITERALS)
    else:
        converted = pd.to_numeric(values, errors="coerce")
    bad = converted.isna()
    if allow_empty:
        bad &= values != ""
    if spec.kind == "int":
        bad |= (converted % 1) != 0
    if bad.any():
        pos = int(np.flatnonzero(bad.to_numpy(dtype=bool))[0])
        raise SimulationParseError(spec.name, pos + line_offset, raw.iloc[pos])
    return converted.astype(KIND_DTYPES[spec.kind])


def load_simulations(path: Path, has_header: bool = True, delimiter: str = ",",
                     require_label: bool = True) -> pd.DataFrame:
    """
    Read a simulation CSV and bind its columns to SCHEMA by position.
    With require_label=False the label column may be absent or blank (scoring
    input); missing labels come back as NaN.
    """
    try:
        raw = pd.read_csv(
            path, sep=delimiter, header=None, skiprows=1 if has_header else 0,
            dtype=str, keep_default_na=False,
        )
    except pd.errors.EmptyDataError:
        logger.debug("No rows in %s", path)
        return records_to_frame([])
    line_offset = 2 if has_header else 1
    n_required = len(SCHEMA) if require_label else len(SCHEMA) - 1
    if raw.shape[1] < n_required:
        raise SimulationParseError(SCHEMA[raw.shape[1]].name, line_offset, f"only {raw.shape[1]} columns")

    columns = {}
    for spec in SCHEMA:
        if spec.index >= raw.shape[1]:
            columns[spec.name] = pd.Series(np.nan, index=raw.index, dtype=KIND_DTYPES[spec.kind])
        else:
            allow_empty = spec.name == LABEL_COLUMN and not require_label
            columns[spec.name] = _coerce(raw.iloc[:, spec.index], spec, line_offset, allow_empty=allow_empty)
    table = pd.DataFrame(columns)
    logger.debug("Loaded %d rows from %s", len(table), path)
    return table


def records_to_frame(records: Iterable[SimulationRecord]) -> pd.DataFrame:
    frame = pd.DataFrame([r.as_row() for r in records], columns=[s.name for s in SCHEMA])
    return frame.astype({s.name: KIND_DTYPES[s.kind] for s in SCHEMA})


def _features(table: pd.DataFrame) -> pd.DataFrame:
    return table.drop(columns=[LABEL_COLUMN], errors="ignore")

# ----------------------------- Pipeline -----------------------------

def build_feature_pipeline(column_names: Sequence[str]) -> ColumnTransformer:
    """
    Encode -> drop -> concatenate, as one ColumnTransformer.
    - security / is_split / is_bust: one-hot, unseen categories become all zeros.
    - run: dropped, never reaches the feature vector.
    - everything else except the label: passed through in schema order.
    """
    transformers = []
    for name in column_names:
        if name == LABEL_COLUMN:
            continue
        if name == ID_COLUMN:
            transformers.append(("drop_" + name, "drop", [name]))
        elif name in CATEGORICAL_COLUMNS:
            transformers.append((name, OneHotEncoder(handle_unknown="ignore", sparse_output=False), [name]))
        else:
            transformers.append((name, "passthrough", [name]))
    return ColumnTransformer(transformers, remainder="drop", verbose_feature_names_out=False)


def train(table: pd.DataFrame, config: RunConfig) -> Pipeline:
    """Append the regressor to the feature pipeline and fit both in one pass."""
    features = build_feature_pipeline(list(table.columns))
    regressor = make_regressor(config.regressor, config.seed)
    # memory= caches the fitted transform stage (joblib.Memory) between fits
    model = Pipeline(
        [("features", features), ("regressor", regressor)],
        memory=str(config.cache_dir) if config.cache_dir else None,
    )
    logger.debug("Fitting %s on %d rows", type(regressor).__name__, len(table))
    return model.fit(_features(table), table[LABEL_COLUMN].to_numpy())


def evaluate(model: Pipeline, table: pd.DataFrame) -> RegressionMetrics:
    y_true = table[LABEL_COLUMN].to_numpy()
    y_pred = model.predict(_features(table))
    mse = float(mean_squared_error(y_true, y_pred))
    return RegressionMetrics(
        r_squared=float(r2_score(y_true, y_pred)),
        root_mean_squared_error=math.sqrt(mse),
        mean_squared_error=mse,
        mean_absolute_error=float(mean_absolute_error(y_true, y_pred)),
        loss_function=mse,  # L2 loss averaged over the rows
    )


def predict_one(model: Pipeline, record: SimulationRecord) -> PredictionResult:
    score = model.predict(_features(records_to_frame([record])))[0]
    return PredictionResult(avg_rate_of_return=float(score))

# ----------------------------- Persistence -----------------------------

def save_model(model: Pipeline, schema: Sequence[ColumnSpec], path: Path) -> None:
    payload = {
        "model": model,
        "schema": [(spec.name, spec.kind, spec.index) for spec in schema],
    }
    joblib.dump(payload, path, compress=3)
    logger.info("Saved model to %s", path)


def load_model(path: Path) -> Pipeline:
    payload = joblib.load(path)
    if not isinstance(payload, dict) or "model" not in payload:
        raise ValueError(f"{path} does not contain a saved rate-of-return model")
    return payload["model"]


def score_csv(model_path: Path, input_csv: Path, output_csv: Path) -> pd.DataFrame:
    """Score a simulation CSV (label column optional) with a persisted model; writes run + predicted label."""
    if not model_path.exists():
        raise MissingDataFileError("Model", model_path)
    if not input_csv.exists():
        raise MissingDataFileError("Scoring", input_csv)
    model = load_model(model_path)
    table = load_simulations(input_csv, require_label=False)
    scored = pd.DataFrame({ID_COLUMN: table[ID_COLUMN], LABEL_COLUMN: model.predict(_features(table))})
    scored.to_csv(output_csv, index=False)
    return scored

# ----------------------------- Feature Importance -----------------------------

def transformed_column_names(table: pd.DataFrame) -> List[str]:
    """Columns of the transformed view: encoded columns become vectors, run is gone, Features appended."""
    names = []
    for name in table.columns:
        if name == ID_COLUMN:
            continue
        runtime_type = "ndarray" if name in CATEGORICAL_COLUMNS else str(table[name].dtype)
        names.append(f"{name}-{runtime_type}")
    names.append(f"{FEATURES_COLUMN}-ndarray")
    return names


def transform_features(model: Pipeline, table: pd.DataFrame) -> FeatureTable:
    matrix = model.named_steps["features"].transform(_features(table))
    return FeatureTable(
        matrix=np.asarray(matrix, dtype=float),
        label=table[LABEL_COLUMN].to_numpy(),
        column_names=transformed_column_names(table),
    )


def rank_importances(impacts: Sequence[float], column_names: Sequence[str]) -> List[Tuple[str, float]]:
    """
    Order slots by |mean impact| descending (stable on ties) and name them by index.
    Slot indices index the feature vector while names come from the transformed
    table's columns, so the two can disagree; unknown indices become OutOfRange.
    """
    order = sorted(range(len(impacts)), key=lambda i: -abs(impacts[i]))
    names = list(column_names)
    ranking = []
    for index in order:
        try:
            name = names[index]
        except IndexError:
            logger.debug("Importance slot %d has no column name", index)
            name = OUT_OF_RANGE
        ranking.append((name, float(impacts[index])))
    return ranking


def permutation_feature_importance(model: Pipeline, table: pd.DataFrame, config: RunConfig) -> List[Tuple[str, float]]:
    """
    Refit a plain regressor of the same family on the transformed training data and
    measure the change in R2 when each feature slot is shuffled (negative = worse).
    """
    features = transform_features(model, table)
    predictor = clone(model.named_steps["regressor"]).fit(features.matrix, features.label)
    result = permutation_importance(
        predictor, features.matrix, features.label,
        scoring="r2", n_repeats=config.permutation_count, random_state=config.seed,
    )
    impacts = -result.importances_mean
    return rank_importances(impacts, features.column_names)


def importance_bars(ranking: Sequence[Tuple[str, float]], top_k: int = 20) -> List[Tuple[str, float]]:
    """(label, value) of the top-k ranks, labels numbered from rank 1."""
    return [(f"{rank}: {name}", value) for rank, (name, value) in enumerate(list(ranking)[:top_k], start=1)]


def save_importance_plot(ranking: Sequence[Tuple[str, float]], outpath: Path, top_k: int = 20) -> None:
    """Horizontal bars of the top-k permutation importances."""
    # barh draws bottom-up, so reverse to put rank 1 on top
    top = importance_bars(ranking, top_k)[::-1]
    plt.figure(figsize=(8, 5))
    plt.barh([label for label, _ in top], [value for _, value in top])
    plt.title("Permutation Feature Importance (change in R2)")
    plt.xlabel("Mean R2 change")
    plt.tight_layout()
    plt.savefig(outpath); plt.close()

# ----------------------------- Reporting -----------------------------

def format_two_places(value: float) -> str:
    """'0.##' style: at most two decimals, trailing zeros dropped."""
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def print_metrics(metrics: RegressionMetrics) -> None:
    print()
    print("****************************************************")
    print("*       Regression Model quality evaluation         ")
    print("*---------------------------------------------------")
    print(f"* {format_two_places(metrics.r_squared)}\tRSquared Score (good = close to 1)")
    print(f"* {format_two_places(metrics.root_mean_squared_error)}\tRoot Mean Squared Error (good = lower)")
    print(f"* {format_two_places(metrics.mean_squared_error)}\tMean Squared Error")
    print(f"* {format_two_places(metrics.mean_absolute_error)}\tMean Absolute Error")
    print(f"* {format_two_places(metrics.loss_function)}\tLoss Function")


def print_prediction(prediction: PredictionResult, record: SimulationRecord) -> None:
    print("*" * 70)
    print(f"Rate of return: predicted: {prediction.avg_rate_of_return:.2%}, actual: {record.avg_rate_of_return:.2%}")
    print("*" * 70)


def print_importances(ranking: Sequence[Tuple[str, float]]) -> None:
    print("PFI\tFeature")
    for name, impact in ranking:
        print(f"{impact:.6f}\t{name}")

# ----------------------------- Main Entry -----------------------------

def run_pipeline(config: RunConfig, train_path: Path, test_path: Path) -> Tuple[Pipeline, List[Tuple[str, float]]]:
    train_table = load_simulations(train_path)

    print(f"Creating model based on data from {train_path}")
    model = train(train_table, config)

    print(f"Now Evaluating the model with test data from {test_path}")
    print_metrics(evaluate(model, load_simulations(test_path)))

    print("Predict data from tests")
    print_prediction(predict_one(model, SAMPLE_RECORD), SAMPLE_RECORD)

    save_model(model, SCHEMA, config.model_path)

    ranking = permutation_feature_importance(model, train_table, config)
    print_importances(ranking)
    if config.plot_path:
        save_importance_plot(ranking, config.plot_path)
        logger.info("Saved importance plot to %s", config.plot_path)
    return model, ranking


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Rate-of-return regression on simulated stock data.")
    ap.add_argument("--data_dir", type=str, default=None,
                    help=f"Directory with the train/test CSVs (default: cwd moved up {DATA_DIR_LEVELS} levels)")
    ap.add_argument("--regressor", type=str, default="fasttree", choices=sorted(regressor_specs()))
    ap.add_argument("--seed", type=int, default=RNG_SEED)
    ap.add_argument("--permutation_count", type=int, default=PERMUTATION_COUNT)
    ap.add_argument("--cache_dir", type=str, default=None, help="Cache the fitted transform stage here")
    ap.add_argument("--plot_path", type=str, default=None, help="Write a PFI bar chart to this PNG")
    ap.add_argument("--score_csv", type=str, default=None, help="Score this CSV with the saved model and exit")
    ap.add_argument("--output_csv", type=str, default="scored.csv")
    ap.add_argument("--verbose", action="store_true")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = RunConfig.from_args(args)

    if args.score_csv:
        try:
            scored = score_csv(config.model_path, Path(args.score_csv), Path(args.output_csv))
        except MissingDataFileError as exc:
            print(exc)
            return 1
        print(f"Wrote {len(scored)} predictions to {args.output_csv}")
        return 0

    try:
        train_path, test_path = locate_data_files(config)
    except MissingDataFileError as exc:
        print(exc)
        return 1

    print("Let's model Rate of Return on investment!")
    run_pipeline(config, train_path, test_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())

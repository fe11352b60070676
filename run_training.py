#!/usr/bin/env python3
"""
Train a model on a CSV file with the automated search engine.

Loads the data, validates it, runs a full training cycle and writes the
results as JSON. Ctrl-C stops the search after the current iteration and
still reports the best model found.

Usage:
    python run_training.py --data data/houses.csv --target price
    python run_training.py --data churn.csv --target churned --target-type binary \
        --environment production --save-as churn-v1
"""

import sys
import json
import signal
import argparse
from pathlib import Path

from tqdm import tqdm

# Add src to path for imports
sys.path.append(str(Path(__file__).resolve().parent / 'src'))

from pocketml import create_training_pipeline, load_rows_from_csv, ModelStore
from pocketml.config import ConfigurationError, TARGET_TYPES
from pocketml.core.dataset import DatasetError
from pocketml.core.model_store import ModelStoreError
from pocketml.utils.logging import TrainingLogger, setup_logging_from_config, stage_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Automated tabular model training")
    parser.add_argument("--data", required=True, help="CSV file with a header row")
    parser.add_argument("--target", required=True, help="Target column name")
    parser.add_argument("--target-type", choices=TARGET_TYPES,
                        help="Target type (suggested from the data if omitted)")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--environment", default="development",
                        choices=["development", "testing", "staging", "production"])
    parser.add_argument("--save-as", help="Save the best model to the model store under this name")
    parser.add_argument("--output", default="models/training_results.json",
                        help="Where to write the results JSON")
    return parser.parse_args(argv)


class ProgressReporter:
    """tqdm bar per iteration plus a one-line summary after each."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.bar = None

    def on_progress(self, epoch: int, total_epochs: int) -> None:
        if not self.enabled:
            return
        if self.bar is None:
            self.bar = tqdm(total=total_epochs, desc="epochs", leave=False)
        self.bar.update(1)

    def on_iteration_complete(self, history, best_iteration) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None
        latest = history[-1]
        marker = " *" if best_iteration == latest.iteration else ""
        tqdm.write(
            f"iteration {latest.iteration}: {latest.architecture} "
            f"train={latest.train_score:.4f} validation={latest.validation_score:.4f} "
            f"epochs={latest.epochs_trained}{marker}"
        )


def make_interrupt_handler(pipeline):
    """First Ctrl-C during a cycle stops it after the current iteration; otherwise interrupt."""

    def handle_interrupt(signum, frame):
        if pipeline.is_running:
            pipeline.stop()
        else:
            signal.default_int_handler(signum, frame)

    return handle_interrupt


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        pipeline = create_training_pipeline(args.config, args.environment)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    config = pipeline.config
    setup_logging_from_config(config.monitoring)
    logger = TrainingLogger("pocketml.cli")
    reporter = ProgressReporter(config.monitoring.enable_progress_bars)

    signal.signal(signal.SIGINT, make_interrupt_handler(pipeline))

    try:
        with stage_logging(logger, "load_data", path=args.data):
            rows = load_rows_from_csv(args.data)

        with stage_logging(logger, "training_cycle", target_column=args.target):
            run = pipeline.run(
                rows, args.target, args.target_type,
                on_progress=reporter.on_progress,
                on_iteration_complete=reporter.on_iteration_complete
            )
    except DatasetError as e:
        print(f"Dataset error: {e}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    finally:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        if pipeline.telemetry is not None:
            pipeline.telemetry.close()

    result = run.result
    if result is None:
        print("Training produced no model", file=sys.stderr)
        return 1

    try:
        output = {
            'data': args.data,
            'target_column': args.target,
            'encoding': run.encoded.state.to_dict(),
            'dataset_warnings': run.validation.warnings,
            'memory_warnings': run.memory_warnings,
            **result.to_dict()
        }

        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump(output, f, indent=2, default=str)

        print(f"\nBest model: iteration {result.best_iteration_index} of {result.iterations} "
              f"({result.best_model.architecture.render()})")
        for split, metrics in result.final_metrics.items():
            rendered = ", ".join(f"{name}={value:.4f}" for name, value in metrics.items())
            print(f"  {split:<10} {rendered}")
        print(f"Results saved to: {output_path}")

        if args.save_as:
            store = ModelStore(config.model_store_dir)
            path = store.save(
                args.save_as, result.best_model,
                metadata={
                    'data': args.data,
                    'target_column': args.target,
                    'target_type': result.target_type,
                    'feature_columns': run.encoded.feature_columns,
                    'encoding': run.encoded.state.to_dict()
                },
                results=result.to_dict()
            )
            print(f"Model saved to: {path}")
    except ModelStoreError as e:
        print(f"Could not save model: {e}", file=sys.stderr)
        return 1
    finally:
        result.best_model.release()

    return 0


if __name__ == "__main__":
    sys.exit(main())

# =============================================================================
# Run Tracker Module
# =============================================================================
# This module tracks CLI runs by saving the effective config, the log and
# per-question results to timestamped folders in ./runs.

import json
import logging
import yaml
from datetime import datetime
from pathlib import Path

from rulepack.config import get_project_root


def create_run(run_name=None, runs_dir=None):
    """
    Create a new run folder with a timestamp, e.g. runs/20260128_143022_context/

    Args:
        run_name: Suffix naming the command (context, parity, ...)
        runs_dir: Parent folder (defaults to <project root>/runs)

    Returns:
        Path: The new run folder, with an empty results/ inside
    """
    runs_dir = Path(runs_dir) if runs_dir else get_project_root() / 'runs'
    runs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    folder_name = f"{timestamp}_{run_name}" if run_name else timestamp

    run_dir = runs_dir / folder_name
    run_dir.mkdir(exist_ok=True)
    (run_dir / 'results').mkdir(exist_ok=True)

    print(f"Created run folder: {run_dir}")

    return run_dir


def save_config(run_dir, config):
    """
    Write the effective configuration (after --config and --pack) to
    config.yaml so a run can be reproduced.

    Args:
        run_dir: Run folder from create_run
        config: Merged configuration dictionary
    """
    config_path = Path(run_dir) / 'config.yaml'

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    print(f"Saved config to: {config_path}")


def save_results(run_dir, question, result, query_number=None):
    """
    Save one ask() result to runs/TIMESTAMP/results/query_001.json

    Args:
        run_dir: Run folder from create_run
        question: The question as typed
        result: Serializable result dict (AskResult.to_dict())
        query_number: Optional number for ordering multiple questions

    Returns:
        Path: The written file
    """
    results_dir = Path(run_dir) / 'results'
    results_dir.mkdir(exist_ok=True)

    if query_number is not None:
        filename = f"query_{query_number:03d}.json"
    else:
        filename = f"query_{datetime.now().strftime('%H%M%S')}.json"

    results_path = results_dir / filename

    data = {
        'question': question,
        'timestamp': datetime.now().isoformat(),
        'result': result,
    }

    with open(results_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    print(f"Saved results to: {results_path}")

    return results_path


def get_logger(run_dir=None, name='rulepack', verbose=False):
    """
    Create a logger that writes to the console and, when a run folder is
    given, to run.log inside it.

    Args:
        run_dir: Optional path to the run folder
        name: Name for the logger (default: 'rulepack')
        verbose: Log DEBUG records (routing, scoring, trimming) too

    Returns:
        logging.Logger: The named logger with fresh handlers
    """
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # main() may call this once per command; never stack handlers
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if run_dir is not None:
        log_path = Path(run_dir) / 'run.log'
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if run_dir is not None:
        logger.info(f"Logging to: {Path(run_dir) / 'run.log'}")

    return logger

# =============================================================================
# Rulepack - Main CLI Entry Point
# =============================================================================
# This is the command-line interface for the retrieval and context-assembly
# engine. It loads a content pack and runs questions through it.
#
# Usage:
#   python main.py inspect                       # Validate a pack and summarize it
#   python main.py context "your question"       # Show routing, bundle and prompt
#   python main.py answer "your question"        # Same, plus a model completion
#   python main.py parity data/parity_cases.json # Compare bundles to expectations
#
# All commands support:
#   --config FILE    Load a custom config file
#   --pack DIR       Override the pack root
#   --track          Save config, log and results to a run folder
#   --verbose        Print the config and log routing/scoring decisions

import argparse
import json
import sys

from dotenv import load_dotenv

from rulepack.completion import make_callables
from rulepack.config import load_config, print_config, resolve_path
from rulepack.engine import AskOptions, Engine
from rulepack.errors import EngineError
from rulepack.evaluation import evaluate_parity, load_parity_cases, save_parity_results
from rulepack.loader import InitParams
from rulepack.run_tracker import create_run, get_logger, save_config, save_results


# =============================================================================
# Shared setup
# =============================================================================

def setup(args, run_name):
    """
    Load config (with --pack applied), and create the run folder and logger.

    Returns:
        tuple: (config, logger, run_dir or None)
    """
    cli_overrides = {}
    if args.pack:
        cli_overrides['pack'] = {'root': args.pack}

    config = load_config(args.config, cli_overrides)

    if args.verbose:
        print("\nConfiguration:")
        print_config(config)
        print()

    if args.track:
        run_dir = create_run(run_name)
        logger = get_logger(run_dir, verbose=args.verbose)
        save_config(run_dir, config)
    else:
        run_dir = None
        logger = get_logger(verbose=args.verbose) if args.verbose else None

    return config, logger, run_dir


def initialize_engine(engine, config):
    """Initialize an engine against the configured pack."""
    pack = config['pack']
    params = InitParams(
        pack_root=str(resolve_path(pack['root'])),
        embedding_model_id=pack.get('embedding_model_id'),
        deterministic_only=bool(pack.get('deterministic_only', True)),
    )
    return engine.initialize(params)


def print_error(error):
    print(f"\nError [{error.kind}]: {error.message}")
    if error.details:
        print(json.dumps(error.details, indent=2, default=str))


def print_result(result):
    trace = result.routing_trace
    print(f"\nMode: {result.mode}")
    if result.analysis is not None:
        print(f"Resolved entity: {result.analysis.resolved_entity_name or '-'}"
              f" ({result.analysis.resolution_step or 'no match'})")
        print(f"Keywords: {', '.join(result.analysis.keyword_tokens) or '-'}")
    print(f"Sections considered: {list(trace.sections_considered)}")
    print(f"Sections selected:   {list(trace.sections_selected)}")
    print(f"Bundle: {len(result.bundle.entities)} entities, {len(result.bundle.rules)} rules,"
          f" ~{result.bundle.token_estimate} tokens")
    print("\n" + "-" * 70)
    print(result.raw_bundle or "(empty bundle)")
    print("-" * 70)
    print(f"\nPrompt ({result.prompt_char_len} chars):")
    print(result.prompt)
    for warning in result.warnings:
        print(f"Warning [{warning['kind']}]: {warning['message']}")


# =============================================================================
# Command Handlers
# =============================================================================

def cmd_inspect(args):
    """
    Handle the 'inspect' command.

    Loads and validates the pack, then prints its versions and index summary.
    """
    print("=" * 70)
    print("Rulepack - Inspect")
    print("=" * 70)

    config, logger, run_dir = setup(args, "inspect")
    engine = Engine(config, logger)

    try:
        state = initialize_engine(engine, config)

        manifest = state.manifest
        print(f"\nPack root: {state.pack_root}")
        print(f"pack_schema_version: {manifest.get('pack_schema_version')}")
        print(f"retrieval_format_version: {manifest.get('retrieval_format_version', 1)}")
        for label, paths in (('rules', state.rules), ('cards', state.cards)):
            meta = paths.meta
            print(f"{label}: embed_model_id={meta.embedding_model_id} dim={meta.dim}"
                  f" metric={meta.metric} normalize={meta.normalize}")
        print(f"Rules in store: {engine.rules_store.count()}")
        print(f"Cards in store: {engine.cards_store.count()}")
        if state.config_overrides:
            print(f"Pack config overrides: {', '.join(state.config_overrides)}")
    except EngineError as e:
        print_error(e)
        return 1
    finally:
        engine.release()

    return 0


def cmd_context(args):
    """
    Handle the 'context' command.

    Builds the context bundle and prompt for a question without calling a model.
    """
    print("=" * 70)
    print("Rulepack - Context")
    print("=" * 70)

    config, logger, run_dir = setup(args, "context")
    engine = Engine(config, logger)

    try:
        initialize_engine(engine, config)
        result = engine.ask(args.question)
    except EngineError as e:
        print_error(e)
        return 1
    finally:
        engine.release()

    print_result(result)

    if run_dir:
        save_results(run_dir, args.question, result.to_dict(), query_number=1)

    return 0


def cmd_answer(args):
    """
    Handle the 'answer' command.

    Builds the prompt and sends it to the configured OpenAI-compatible endpoint.
    """
    print("=" * 70)
    print("Rulepack - Answer")
    print("=" * 70)

    config, logger, run_dir = setup(args, "answer")
    engine = Engine(config, logger)

    try:
        state = initialize_engine(engine, config)
        completion_fn, embed_fn = make_callables(state.config, logger)
        result = engine.ask(args.question, AskOptions(completion=completion_fn, embed=embed_fn))
    except EngineError as e:
        print_error(e)
        return 1
    finally:
        engine.release()

    if args.verbose:
        print_result(result)

    print("\n" + "=" * 70)
    print("ANSWER")
    print("=" * 70)
    print(result.completion)

    if run_dir:
        save_results(run_dir, args.question, result.to_dict(), query_number=1)

    return 0


def cmd_parity(args):
    """
    Handle the 'parity' command.

    Runs every case in a parity file and reports entity/section matches and
    rule-id precision/recall.
    """
    print("=" * 70)
    print("Rulepack - Parity")
    print("=" * 70)

    config, logger, run_dir = setup(args, "parity")

    try:
        cases = load_parity_cases(args.cases)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        print(f"\nError: cannot load parity cases from {args.cases}: {e!r}")
        return 1
    print(f"Loaded {len(cases)} parity cases from {args.cases}")

    engine = Engine(config, logger)
    try:
        state = initialize_engine(engine, config)
        results = evaluate_parity(engine, cases, verbose=args.verbose)
    except EngineError as e:
        print_error(e)
        return 1
    finally:
        engine.release()

    for item in results['individual_results']:
        status = 'OK ' if item['entity_match'] and item['section_match'] else 'DIFF'
        print(f"  [{status}] {item['qid']}: P={item['rule_precision']:.2f}"
              f" R={item['rule_recall']:.2f}  {item['question'][:50]}")

    print("\nMetrics:")
    for name, value in results['metrics'].items():
        print(f"  {name}: {value:.3f}")

    if run_dir:
        output_file = save_parity_results(results, run_dir, state.config)
        print(f"\nSaved parity results to: {output_file}")

    return 0


# =============================================================================
# Main Entry Point
# =============================================================================

def add_common_arguments(subparser):
    subparser.add_argument(
        '--config', '-c',
        help='Path to custom config YAML file'
    )
    subparser.add_argument(
        '--pack', '-p',
        help='Path to the content pack root (overrides pack.root)'
    )
    subparser.add_argument(
        '--track', '-t',
        action='store_true',
        help='Create a run folder to track this operation'
    )
    subparser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print configuration and debug-level routing details'
    )


def main():
    """
    Main entry point - parse arguments and run the appropriate command.
    """
    load_dotenv()

    parser = argparse.ArgumentParser(
        description='Rulepack - Deterministic rules retrieval and context assembly',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py inspect --pack data/content_pack
  python main.py context "What does Lightning Bolt do?"
  python main.py context "How does trample interact with deathtouch?" -v
  python main.py answer "What is 702.19b?" --track
  python main.py parity data/parity_cases.json --track
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # -------------------------------------------------------------------------
    # Inspect command
    # -------------------------------------------------------------------------
    inspect_parser = subparsers.add_parser(
        'inspect',
        help='Load and validate a pack, then print a summary'
    )
    add_common_arguments(inspect_parser)

    # -------------------------------------------------------------------------
    # Context command
    # -------------------------------------------------------------------------
    context_parser = subparsers.add_parser(
        'context',
        help='Build the context bundle and prompt for a question'
    )
    context_parser.add_argument(
        'question',
        help='The question to build context for'
    )
    add_common_arguments(context_parser)

    # -------------------------------------------------------------------------
    # Answer command
    # -------------------------------------------------------------------------
    answer_parser = subparsers.add_parser(
        'answer',
        help='Build the prompt and ask the configured model'
    )
    answer_parser.add_argument(
        'question',
        help='The question to answer'
    )
    add_common_arguments(answer_parser)

    # -------------------------------------------------------------------------
    # Parity command
    # -------------------------------------------------------------------------
    parity_parser = subparsers.add_parser(
        'parity',
        help='Run parity cases against the pack'
    )
    parity_parser.add_argument(
        'cases',
        help='Path to a JSON file of parity cases'
    )
    add_common_arguments(parity_parser)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'inspect':
        return cmd_inspect(args)
    elif args.command == 'context':
        return cmd_context(args)
    elif args.command == 'answer':
        return cmd_answer(args)
    elif args.command == 'parity':
        return cmd_parity(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())

"""
M-Stack CLI
============

Command-line interface for running a request, checking an audit log,
feeding outcomes to the Calibrator and running the offline benchmark.

Usage:
    python -m mstack run --request req.json --candidates cands.json
    python -m mstack verify-log --log outputs/audit.jsonl
    python -m mstack calibrate --outcomes outcomes.jsonl --checkpoint outputs/dual_state.json
    python -m mstack bench --output results.json --per-domain 200
    python -m mstack export-schemas --output-dir schemas
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from mstack.config import get_config
from mstack.utils import setup_logging


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="mstack",
        description="M-Stack: inference-time reliability controller",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to config YAML")
    parser.add_argument("--mode", choices=["lite", "full"], default=None)
    parser.add_argument("--verbose", "-v", action="store_true")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # ── run ─────────────────────────────────────────────────────
    run_parser = subparsers.add_parser("run", help="Run one request through the pipeline")
    run_parser.add_argument("--request", required=True, help="Request JSON file")
    run_parser.add_argument(
        "--candidates", default=None,
        help="JSON list of scripted candidates (required in lite mode)",
    )
    run_parser.add_argument("--output", type=str, default=None, help="Output JSON path")

    # ── verify-log ──────────────────────────────────────────────
    verify_parser = subparsers.add_parser("verify-log", help="Check an audit log's hash chain")
    verify_parser.add_argument("--log", default=None, help="JSONL audit log (default: config)")

    # ── calibrate ───────────────────────────────────────────────
    calib_parser = subparsers.add_parser("calibrate", help="Apply labelled outcomes to DualState")
    calib_parser.add_argument("--outcomes", required=True, help="JSONL of CalibrationOutcome objects")
    calib_parser.add_argument("--checkpoint", default=None, help="DualState checkpoint to read/write")

    # ── bench ───────────────────────────────────────────────────
    bench_parser = subparsers.add_parser("bench", help="Run the offline benchmark kit")
    bench_parser.add_argument("--output", default="results.json")
    bench_parser.add_argument("--per-domain", type=int, default=200)
    bench_parser.add_argument("--seed", type=int, default=42)

    # ── export-schemas ──────────────────────────────────────────
    schema_parser = subparsers.add_parser("export-schemas", help="Export JSON schemas")
    schema_parser.add_argument("--output-dir", default="schemas")

    args = parser.parse_args(argv)

    if args.mode:
        os.environ["MSTACK_MODE"] = args.mode

    config = get_config(args.config)
    setup_logging(level="DEBUG" if args.verbose else config.log_level, format_style=config.log_format)

    commands = {
        "run": cmd_run,
        "verify-log": cmd_verify_log,
        "calibrate": cmd_calibrate,
        "bench": cmd_bench,
        "export-schemas": cmd_export_schemas,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    command(args, config)


def cmd_run(args, config):
    """Run M-Stack on a single request."""
    from mstack.adapters.scripted import ScriptedGenerator
    from mstack.pipeline import MStackPipeline
    from mstack.schemas import Candidate, Request

    with open(args.request) as f:
        request = Request.model_validate(json.load(f))

    generator = None
    if args.candidates:
        with open(args.candidates) as f:
            generator = ScriptedGenerator([Candidate.model_validate(c) for c in json.load(f)])
    elif config.is_lite:
        print("Error: lite mode needs --candidates (no generator is configured)")
        sys.exit(1)

    pipeline = MStackPipeline.from_config(config, generator=generator)

    async def _run():
        result = await pipeline.run_detailed(request)
        await pipeline.drain_audit()
        return result

    result = asyncio.run(_run())
    response = result.response

    print(f"\nQuery: {request.query}")
    print(f"Action: {response.action.value}  (confidence {response.confidence:.2f})")
    print(f"Trail: {' → '.join(result.trail)}")
    print(f"Rationale: {response.rationale}")
    if response.text:
        print(f"\n  {response.text}")
    if response.citations:
        print(f"\n  Citations: {', '.join(response.citations)}")
    print(f"\n  Log id: {response.log_id}")
    if pipeline.audit is not None and pipeline.audit.missing_audit:
        print(f"  Audit degraded: {pipeline.audit.missing_audit} record(s) not persisted")

    if args.output:
        output = {
            "response": response.model_dump(mode="json"),
            "signals": result.signals.model_dump(mode="json") if result.signals else None,
            "scores": result.scores.model_dump(mode="json") if result.scores else None,
            "decision": result.decision.model_dump(mode="json"),
            "cost": result.cost,
            "timings": result.timings,
        }
        with open(args.output, "w") as f:
            json.dump(output, f, indent=2, default=str)
        print(f"\n  Results saved to {args.output}")


def cmd_verify_log(args, config):
    """Validate the hash chain of a JSONL audit log."""
    from mstack.audit.logger import JsonlLogSink, verify_chain

    path = Path(args.log) if args.log else config.audit.log_path
    if not path.exists():
        print(f"Error: {path} not found")
        sys.exit(1)

    records = JsonlLogSink(path).load()
    broken = verify_chain(records)
    if broken is None:
        print(f"Chain intact: {len(records)} records ✅")
    else:
        print(f"Chain BROKEN at record {broken} (qid={records[broken].qid}) ❌")
        sys.exit(1)


def cmd_calibrate(args, config):
    """Feed a JSONL file of outcomes into the Calibrator."""
    from mstack.learn.calibrator import Calibrator

    checkpoint = Path(args.checkpoint) if args.checkpoint else config.calibrator.checkpoint_path
    if checkpoint is not None and checkpoint.exists():
        calibrator = Calibrator.load_checkpoint(checkpoint, config=config.calibrator)
    else:
        calibrator = Calibrator(config.calibrator)

    outcomes = []
    with open(args.outcomes) as f:
        for line in f:
            line = line.strip()
            if line:
                outcomes.append(json.loads(line))

    accepted = calibrator.update_batch(outcomes)
    if calibrator.window_size >= config.calibrator.min_window:
        calibrator.recalibrate()
    else:
        print(f"tau kept: {calibrator.window_size} coverage scores < min_window={config.calibrator.min_window}")
    state = calibrator.snapshot()

    print(f"Outcomes: {len(outcomes)} ({accepted} accepted, {len(outcomes) - accepted} skipped)")
    print(f"lambda={state.lambda_:.4f}  mu={state.mu:.4f}  tau={state.tau:.4f}  v{state.version}")

    if checkpoint is not None:
        calibrator.save_checkpoint(checkpoint)
        print(f"Checkpoint written to {checkpoint}")


def cmd_bench(args, config):
    """Run the offline benchmark kit and write results.json."""
    from eval.benchmark import run_benchmark

    results = run_benchmark(config=config, per_domain=args.per_domain, seed=args.seed)
    with open(args.output, "w") as f:
        json.dump(results, f, indent=2)

    print(f"\n{'=' * 60}")
    print(f"{'System':<18} {'Halluc.':>9} {'ECE':>8} {'AURC':>8} {'Coverage':>9}")
    for system, row in results["Overall"].items():
        print(
            f"{system:<18} {row['hallucination_rate']:>9.3f} {row['ece']:>8.3f} "
            f"{row['aurc']:>8.3f} {row['coverage']:>9.3f}"
        )
    print(f"{'=' * 60}")
    print(f"\nResults saved to {args.output}")


def cmd_export_schemas(args, config):
    """Export JSON schemas for all data contracts."""
    from mstack import schemas

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    models = {
        "request": schemas.Request,
        "candidate": schemas.Candidate,
        "response": schemas.Response,
        "claim_graph": schemas.ClaimGraph,
        "signals": schemas.Signals,
        "scores": schemas.Scores,
        "dual_state": schemas.DualState,
        "decision": schemas.Decision,
        "calibration_outcome": schemas.CalibrationOutcome,
        "log_record": schemas.LogRecord,
    }
    for name, model in models.items():
        path = output_dir / f"{name}.json"
        with open(path, "w") as f:
            json.dump(model.model_json_schema(), f, indent=2)
        print(f"Exported: {path}")

    print(f"\n{len(models)} schemas exported to {output_dir}/")


if __name__ == "__main__":
    main()

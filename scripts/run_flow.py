#!/usr/bin/env python3
"""
Run Flow — Invoke a flow from the command line.

Builds the same orchestrator the API uses (configured model client,
weather service, built-in flows) and prints the validated output as JSON.

Usage:
    python scripts/run_flow.py --list
    python scripts/run_flow.py optimizeRouteFlow --input '{"startLocation": {...}, ...}'
    python scripts/run_flow.py predictEtaFlow --input-file request.json --details
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

from config.settings import load_settings
from core.orchestrator import create_flow_orchestrator
from flows.errors import FlowError


async def _run(args) -> int:
    settings = load_settings(args.config)
    orchestrator = create_flow_orchestrator(settings)

    if args.list:
        for flow in orchestrator.flows.list_all():
            print(f"{flow.name:<22} {flow.description}")
        return 0

    if args.input_file:
        payload = json.loads(Path(args.input_file).read_text())
    else:
        payload = json.loads(args.input or "{}")

    try:
        result = await orchestrator.run(args.flow, payload)
    except FlowError as e:
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1
    finally:
        await orchestrator.client.close()

    if args.details:
        print(result.model_dump_json(indent=2))
    else:
        print(json.dumps(result.output, indent=2))
    return 0


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Invoke a SwiftDispatch AI flow")
    parser.add_argument("flow", nargs="?", default="optimizeRouteFlow", help="Flow name")
    parser.add_argument("--input", help="Flow input as a JSON string")
    parser.add_argument("--input-file", help="Path to a JSON file holding the flow input")
    parser.add_argument("--config", help="Path to settings.yaml")
    parser.add_argument("--list", action="store_true", help="List registered flows")
    parser.add_argument("--details", action="store_true",
                        help="Print the full run result (states, tool calls, turns)")
    args = parser.parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()

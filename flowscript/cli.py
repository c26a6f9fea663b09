import sys
import argparse
import json
from pathlib import Path

from .errors import CompileError, RuntimeFlowError
from .runtime import Runtime, compile_source


def _find_source(target: str) -> Path:
    potential_paths = [
        Path(target),
        Path(f"{target}.flow"),
        Path("examples") / target,
        Path("examples") / f"{target}.flow",
    ]
    for p in potential_paths:
        if p.exists() and p.is_file():
            return p
    print(f"Error: Could not find flow file for '{target}'")
    print("Checked: " + ", ".join(str(p) for p in potential_paths))
    sys.exit(1)


def _parse_vars(pairs):
    variables = {}
    for pair in pairs or []:
        key, _, value = pair.partition("=")
        variables[key] = value
    return variables


def main(argv=None):
    parser = argparse.ArgumentParser(description="FlowScript - compile and dry-run control-flow scripts")
    subparsers = parser.add_subparsers(dest="command")

    check_parser = subparsers.add_parser("check", help="Compile a .flow file and list its flows")
    check_parser.add_argument("name", help="Name or path of the flow file")

    run_parser = subparsers.add_parser("run", help="Dry-run a flow: every step succeeds with its own name")
    run_parser.add_argument("name", help="Name or path of the flow file")
    run_parser.add_argument("--flow", help="Flow to run (default: the first one)")
    run_parser.add_argument("--var", action="append", metavar="KEY=VALUE", help="Initial variable binding")
    run_parser.add_argument("--json", action="store_true", help="Print the trace as JSON")

    args = parser.parse_args(argv)

    if args.command == "check":
        flow_file = _find_source(args.name)
        try:
            program = compile_source(flow_file)
        except CompileError as e:
            print(f"[Error] {e}")
            return 1
        for flow in program.flows:
            print(f"{flow.id}: {flow.root.kind} ({len(flow.labels)} labels)")
        return 0

    if args.command == "run":
        flow_file = _find_source(args.name)
        rt = Runtime(dry_run=True)
        try:
            rt.load(flow_file)
            result = rt.run_flow(args.flow, _parse_vars(args.var))
        except (CompileError, RuntimeFlowError) as e:
            print(f"[Error] {e}")
            return 1
        finally:
            rt.close()
        if args.json:
            print(json.dumps(result.model_dump(mode="json"), indent=2, default=str))
        else:
            for entry in result.entries:
                note = f" ({entry.note})" if entry.note else ""
                print(f"[{entry.kind}] {entry.step} -> {entry.result.status.value}{note}")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())

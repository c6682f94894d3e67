import importlib
from pathlib import Path
import sys

from mtnorm.workflows.flow_runner import run_flow

cli_flows = {
    "mtnorm_normalise": ("mtnorm.workflows.normalization", "MTNormaliseFlow"),
}


def run():
    """Run the workflow matching the name of the invoked script."""
    script_name = Path(sys.argv[0]).stem
    args = sys.argv[1:]
    if script_name not in cli_flows and args and args[0] in cli_flows:
        script_name, args = args[0], args[1:]
    if script_name not in cli_flows:
        print(f"Unknown command: {script_name}")
        print(f"Available commands: {', '.join(sorted(cli_flows))}")
        sys.exit(1)

    mod_name, flow_name = cli_flows[script_name]
    mod = importlib.import_module(mod_name)
    return run_flow(getattr(mod, flow_name)(), args=args)


if __name__ == "__main__":
    run()

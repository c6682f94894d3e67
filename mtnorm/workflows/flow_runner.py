from mtnorm.utils.logging import logger, set_log_level
from mtnorm.workflows.base import IntrospectiveArgumentParser


def run_flow(flow, args=None):
    """Wraps the process of building an argparser that reflects the workflow
    that we want to run along with some generic parameters like logging,
    force and output strategies. The resulting parameters are then fed to
    the workflow's run method.

    Parameters
    ----------
    flow : Workflow
        Workflow instance to run.
    args : list of str, optional
        Command line arguments. Defaults to ``sys.argv[1:]``.

    Returns
    -------
    result : object
        Whatever the workflow's run method returns.
    """
    parser = IntrospectiveArgumentParser()
    parser.add_workflow(flow)

    flow_args = parser.get_flow_args(args)

    log_level = flow_args.pop("log_level")
    log_file = flow_args.pop("log_file")
    set_log_level(log_level, log_file=log_file or None)

    flow._force_overwrite = flow_args.pop("force")
    logger.debug(f"Running {flow.get_short_name()} with {flow_args}")

    return flow.run(**flow_args)

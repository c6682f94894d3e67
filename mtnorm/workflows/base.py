import argparse
import inspect

_TYPES = {
    "int": int,
    "float": float,
    "string": str,
    "str": str,
    "path": str,
    "bool": None,
}


def _str2bool(value):
    if value.lower() in ("yes", "true", "t", "y", "1"):
        return True
    if value.lower() in ("no", "false", "f", "n", "0"):
        return False
    raise argparse.ArgumentTypeError(f"Boolean value expected, got {value}.")


def parse_numpy_docstring(doc):
    """Split a numpy style docstring into description and parameters.

    Parameters
    ----------
    doc : str
        Docstring, already dedented (``inspect.getdoc``).

    Returns
    -------
    description : str
        Text before the first section.
    params : dict
        Maps each parameter name to a ``(type_string, help)`` tuple.
    """
    lines = (doc or "").splitlines()
    description, params = [], {}
    section = None
    current = None
    for i, line in enumerate(lines):
        nxt = lines[i + 1] if i + 1 < len(lines) else ""
        if line.strip() and set(nxt.strip()) == {"-"}:
            section = line.strip()
            current = None
            continue
        if set(line.strip()) == {"-"}:
            continue
        if section is None:
            description.append(line)
        elif section == "Parameters":
            if line and not line.startswith(" "):
                name, _, type_str = line.partition(":")
                current = name.strip()
                params[current] = [type_str.strip(), []]
            elif current is not None and line.strip():
                params[current][1].append(line.strip())
    params = {k: (v[0], " ".join(v[1])) for k, v in params.items()}
    return "\n".join(description).strip(), params


class IntrospectiveArgumentParser(argparse.ArgumentParser):
    def __init__(self, prog=None, description=None, epilog=None):
        """Augmenting the argument parser to allow automatic creation of
        arguments from workflows.

        Positional parameters of the workflow ``run`` method become positional
        arguments, keyword-only parameters without a default become required
        options and parameters with a default become optional flags. Types and
        help messages come from the numpy style docstring of ``run``.
        """
        super().__init__(
            prog=prog,
            description=description,
            epilog=epilog,
            formatter_class=argparse.RawTextHelpFormatter,
        )
        self._flow_params = []

    def add_workflow(self, workflow):
        """Take a workflow object and use introspection to extract the
        parameters, types and docstrings of its run method.

        Parameters
        ----------
        workflow : Workflow
            Workflow from which to infer the parameters.
        """
        doc = inspect.getdoc(workflow.run)
        description, doc_params = parse_numpy_docstring(doc)
        self.description = description

        signature = inspect.signature(workflow.run)
        for name, param in signature.parameters.items():
            type_str, help_msg = doc_params.get(name, ("", ""))
            words = type_str.replace(",", " ").split()
            is_variable = "variable" in words
            is_bool = "bool" in words or isinstance(param.default, bool)
            arg_type = next((_TYPES[w] for w in words if w in _TYPES), str)

            kwargs = {"help": help_msg}
            if is_bool:
                if param.default is False:
                    kwargs["action"] = "store_true"
                else:
                    kwargs["type"] = _str2bool
            else:
                kwargs["type"] = arg_type
                if is_variable:
                    kwargs["nargs"] = "+"

            if param.default is inspect.Parameter.empty:
                if param.kind is inspect.Parameter.KEYWORD_ONLY:
                    self.add_argument(f"--{name}", dest=name, required=True, **kwargs)
                else:
                    self.add_argument(name, **kwargs)
            else:
                self.add_argument(
                    f"--{name}", dest=name, default=param.default, **kwargs
                )
            self._flow_params.append(name)

        self.add_common_args()

    def add_common_args(self):
        self.add_argument(
            "--force",
            action="store_true",
            help="Force overwriting output files.",
        )
        self.add_argument(
            "--log_level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Log messages display level.",
        )
        self.add_argument(
            "--log_file",
            default="",
            help="Log file to be saved.",
        )

    def get_flow_args(self, args=None, namespace=None):
        """Return the parsed arguments as a dictionary that will be used
        as a workflow's run method arguments.
        """
        ns_args = self.parse_args(args, namespace)
        return vars(ns_args)

    @property
    def flow_params(self):
        return list(self._flow_params)

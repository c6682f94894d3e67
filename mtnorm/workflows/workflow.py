from pathlib import Path

from mtnorm.utils.logging import logger


class Workflow:
    def __init__(self, *, out_dir="", force=False, skip=False):
        """Initialize the basic workflow object.

        This object takes care of any workflow operation that is common to all
        the workflows. Every new workflow should extend this class.
        """
        self._out_dir = out_dir
        self._force_overwrite = force
        self._skip = skip
        self.flat_outputs = []
        self.last_generated_outputs = None

    def resolve_outputs(self, outputs, *, out_dir=None):
        """Place the output file names in the output directory.

        Parameters
        ----------
        outputs : dict
            Mapping of output keys to file names; None values are kept as
            "not requested". Absolute paths are left untouched.
        out_dir : string or Path, optional
            Output directory. Defaults to the one given at construction.

        Returns
        -------
        resolved : dict
            Same keys, with ``Path`` values.
        """
        out_dir = Path(self._out_dir if out_dir is None else out_dir)
        resolved = {}
        for key, name in outputs.items():
            if name is None or name == "":
                resolved[key] = None
            else:
                path = Path(name)
                resolved[key] = path if path.is_absolute() else out_dir / path
        self.last_generated_outputs = resolved
        self.flat_outputs = [p for p in resolved.values() if p is not None]
        return resolved

    def manage_output_overwrite(self):
        """Check if a file will be overwritten upon processing the inputs.

        If it is bound to happen, an action is taken depending on
        self._force_overwrite (or --force via command line). A log message is
        output independently of the outcome to tell the user something
        happened.
        """
        duplicates = []
        for output in self.flat_outputs:
            if Path(output).is_file():
                duplicates.append(output)

        if len(duplicates) > 0:
            if self._force_overwrite:
                logger.info("The following output files are about to be overwritten.")
            else:
                logger.info(
                    "The following output files already exist, the "
                    "workflow will not continue processing any "
                    "further. Add the --force flag to allow output "
                    "files overwrite."
                )

            for dup in duplicates:
                logger.info(dup)

            return self._force_overwrite

        return True

    def run(self, *args, **kwargs):
        """Execute the workflow.

        Since this is an abstract class, raise exception if this code is
        reached (not implemented in child class or literally called on this
        class)
        """
        raise NotImplementedError(f"Error: {self.__class__} does not have a run method.")

    @classmethod
    def get_short_name(cls):
        """Return A short name for the workflow.

        The short name is used by the argument parser to prefix the workflow
        parameters. Returns the class name by default.
        """
        return cls.__name__

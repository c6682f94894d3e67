from pathlib import Path

import numpy as np
import tomli_w

from mtnorm.io.image import (
    format_header_description,
    load_mask,
    load_tissue,
    save_balance_factors,
    save_nifti,
)
from mtnorm.normalization.mtnormalise import (
    DEFAULT_MAX_BALANCE_ITER,
    DEFAULT_MAX_ITER,
    DEFAULT_ORDER,
    DEFAULT_REFERENCE,
    InputShapeError,
    MTNormalise,
    NormalisationConfig,
)
from mtnorm.utils.logging import logger
from mtnorm.workflows.workflow import Workflow

try:  # standard module since Python 3.11
    import tomllib as toml
except ImportError:
    # available for older Python via pip
    import tomli as toml

_DEFAULTS = {
    "order": DEFAULT_ORDER,
    "niter": DEFAULT_MAX_ITER,
    "reference": DEFAULT_REFERENCE,
    "balanced": False,
    "num_threads": None,
    "max_balance_iter": DEFAULT_MAX_BALANCE_ITER,
}


def read_config_file(config_file):
    """Read the ``[mtnormalise]`` table of a TOML configuration file.

    Parameters
    ----------
    config_file : string or Path

    Returns
    -------
    options : dict
        Only keys among order, niter, reference, balanced, num_threads and
        max_balance_iter are kept.
    """
    with open(config_file, "rb") as f:
        config = toml.load(f)
    table = config.get("mtnormalise", {})
    unknown = set(table) - set(_DEFAULTS)
    if unknown:
        raise ValueError(
            f"Unknown keys in {config_file} [mtnormalise]: {', '.join(sorted(unknown))}"
        )
    return dict(table)


class MTNormaliseFlow(Workflow):
    @classmethod
    def get_short_name(cls):
        return "mtnormalise"

    def run(
        self,
        input_output_files,
        *,
        mask,
        order=None,
        niter=None,
        reference=None,
        balanced=False,
        num_threads=None,
        config_file="",
        out_dir="",
        out_norm="",
        out_mask="",
        out_factors="",
        out_report="",
    ):
        """Multi-tissue informed log-domain intensity normalisation.

        Inputs any number of tissue compartments (e.g. from multi-tissue CSD)
        and outputs the corresponding normalised compartments. Normalisation
        is performed in the log domain and can vary smoothly in space to
        accommodate residual intensity inhomogeneities. Outlier areas with
        exceptionally low or high combined tissue contributions are excluded
        and reconsidered as the estimate improves.

        Example: mtnorm_normalise wmfod.nii.gz wmfod_norm.nii.gz gm.nii.gz
        gm_norm.nii.gz csf.nii.gz csf_norm.nii.gz --mask mask.nii.gz

        Parameters
        ----------
        input_output_files : variable string
            Pairs of input tissue compartment and output file.
        mask : string
            Mask defining the data used to compute the normalisation,
            optimally a brain mask.
        order : int, optional
            Maximum order (0 to 3) of the polynomial fitting the
            normalisation field in the log domain. An order of 0 does not
            allow spatial variance of the normalisation factor (default: 3).
        niter : int, optional
            Number of iterations (default: 15).
        reference : float, optional
            Positive reference value to which the summed tissue compartments
            are normalised (default: 0.28209479177, the SH DC term for a unit
            angular integral).
        balanced : bool, optional
            Incorporate the per-tissue balance factors into the scaling of
            the outputs. This has critical consequences for AFD intensity
            normalisation.
        num_threads : int, optional
            Number of threads. If None (default) all cores are used.
        config_file : string, optional
            TOML file whose [mtnormalise] table provides defaults for order,
            niter, reference, balanced, num_threads and max_balance_iter.
            Values given on the command line take precedence.
        out_dir : string, optional
            Output directory for relative output paths.
        out_norm : string, optional
            Save the final estimated normalisation field to this file.
        out_mask : string, optional
            Save the final mask, outliers excluded, to this file.
        out_factors : string, optional
            Save the tissue balance factors to this text file.
        out_report : string, optional
            Save a TOML summary of the run to this file.
        """
        if len(input_output_files) % 2:
            raise InputShapeError(
                "The number of arguments must be even, provided as pairs of "
                "each input and its corresponding output file."
            )
        inputs = list(input_output_files[::2])
        outputs = {f"out_tissue_{j}": name for j, name in enumerate(input_output_files[1::2])}
        outputs.update(
            out_norm=out_norm,
            out_mask=out_mask,
            out_factors=out_factors,
            out_report=out_report,
        )
        resolved = self.resolve_outputs(outputs, out_dir=out_dir)
        if not self.manage_output_overwrite():
            raise FileExistsError(
                "Output files already exist. If you want to overwrite "
                "please use the --force option."
            )

        options = self._merge_config(
            config_file,
            order=order,
            niter=niter,
            reference=reference,
            balanced=balanced,
            num_threads=num_threads,
        )
        config = NormalisationConfig(
            order=int(options["order"]),
            max_iter=int(options["niter"]),
            max_balance_iter=int(options["max_balance_iter"]),
            reference=float(options["reference"]),
            balanced=bool(options["balanced"]),
            num_threads=options["num_threads"],
        )

        tissues, headers, ndims = [], [], []
        for fpath in inputs:
            logger.info(f"Loading tissue compartment {fpath}")
            data, _, img = load_tissue(fpath)
            if tissues and data.shape[:3] != tissues[0].shape[:3]:
                raise InputShapeError(
                    f"Dimensions of {fpath} {data.shape[:3]} do not match "
                    f"those of {inputs[0]} {tissues[0].shape[:3]}."
                )
            tissues.append(data)
            headers.append(img.header)
            ndims.append(len(img.shape))

        mask_data, mask_affine = load_mask(mask)

        result = MTNormalise(config).fit(tissues, mask_data, affine=mask_affine)

        for j, data in enumerate(result.normalised):
            out_path = resolved[f"out_tissue_{j}"]
            metadata = {"lognorm_scale": result.lognorm_scale}
            if config.balanced:
                metadata["lognorm_balance"] = result.balance_factors[j]
            if ndims[j] == 3:
                data = data[..., 0]
            save_nifti(
                out_path,
                data,
                headers[j].get_best_affine(),
                hdr=headers[j],
                dtype=np.float32,
                description=format_header_description(metadata),
            )
            logger.info(f"Normalised tissue saved as {out_path}")

        if resolved["out_norm"] is not None:
            save_nifti(resolved["out_norm"], result.field, mask_affine, dtype=np.float32)
            logger.info(f"Normalisation field saved as {resolved['out_norm']}")

        if resolved["out_mask"] is not None:
            save_nifti(resolved["out_mask"], result.mask, mask_affine, dtype=np.uint8)
            logger.info(f"Final mask saved as {resolved['out_mask']}")

        if resolved["out_factors"] is not None:
            save_balance_factors(resolved["out_factors"], result.balance_factors)
            logger.info(f"Balance factors saved as {resolved['out_factors']}")

        if resolved["out_report"] is not None:
            self._write_report(resolved["out_report"], config, inputs, resolved, result)
            logger.info(f"Report saved as {resolved['out_report']}")

        return result

    @staticmethod
    def _merge_config(config_file, **cli_values):
        """Defaults, overridden by the config file, overridden by the values
        given explicitly (anything but None, or True for flags)."""
        options = dict(_DEFAULTS)
        if config_file:
            options.update(read_config_file(config_file))
        for key, value in cli_values.items():
            if value is not None and value is not False:
                options[key] = value
        return options

    @staticmethod
    def _write_report(fname, config, inputs, resolved, result):
        report = {
            "mtnormalise": {
                "order": config.order,
                "niter": config.max_iter,
                "max_balance_iter": config.max_balance_iter,
                "reference": config.reference,
                "balanced": config.balanced,
            },
            "io": {
                "inputs": [str(p) for p in inputs],
                "outputs": {
                    key: str(path) for key, path in resolved.items() if path is not None
                },
            },
            "result": {
                "balance_factors": [float(b) for b in result.balance_factors],
                "lognorm_scale": float(result.lognorm_scale),
                "mask_voxels": int(np.count_nonzero(result.mask)),
                "balance_iterations": [int(n) for n in result.balance_iterations],
                "converged": [bool(c) for c in result.converged],
            },
        }
        with open(Path(fname), "wb") as f:
            tomli_w.dump(report, f)

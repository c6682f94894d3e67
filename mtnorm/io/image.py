"""Reading and writing of tissue volumes (NIfTI via nibabel)."""

from pathlib import Path

import nibabel as nib
import numpy as np

from mtnorm.normalization.mtnormalise import InputShapeError


def load_nifti(fname, *, return_img=False, return_voxsize=False, as_ndarray=True):
    """Load data and affine from a NIfTI file.

    Parameters
    ----------
    fname : str or Path
        Full path to a NIfTI file.
    return_img : bool, optional
        Whether to also return the nibabel image.
    return_voxsize : bool, optional
        Whether to also return the voxel size.
    as_ndarray : bool, optional
        Convert the data to a numpy array. If False, the nibabel array proxy
        is returned.

    Returns
    -------
    data : ndarray
    affine : ndarray
    img : nibabel.Nifti1Image
        Only if ``return_img`` is True.
    voxsize : tuple
        Only if ``return_voxsize`` is True.
    """
    img = nib.load(str(fname))
    data = np.asanyarray(img.dataobj) if as_ndarray else img.dataobj

    ret_val = [data, img.affine]
    if return_img:
        ret_val.append(img)
    if return_voxsize:
        ret_val.append(img.header.get_zooms()[:3])
    return tuple(ret_val)


def load_tissue(fname):
    """Load a tissue compartment as a 4D float32 array.

    3D inputs are promoted to (X, Y, Z, 1).

    Parameters
    ----------
    fname : str or Path

    Returns
    -------
    data : ndarray
        Shape (X, Y, Z, V).
    affine : ndarray
    img : nibabel.Nifti1Image
    """
    data, affine, img = load_nifti(fname, return_img=True)
    if data.ndim > 4:
        raise InputShapeError(
            f'Input image "{fname}" contains more than 4 dimensions.'
        )
    if data.ndim < 3:
        raise InputShapeError(
            f'Input image "{fname}" has {data.ndim} dimensions; expected 3 or 4.'
        )
    if data.ndim == 3:
        data = data[..., None]
    return data.astype(np.float32, copy=False), affine, img


def load_mask(fname):
    """Load a mask image as a 3D boolean array.

    Parameters
    ----------
    fname : str or Path

    Returns
    -------
    mask : ndarray
    affine : ndarray
    """
    data, affine = load_nifti(fname)
    if data.ndim == 4 and data.shape[3] == 1:
        data = data[..., 0]
    if data.ndim != 3:
        raise InputShapeError(
            f'Mask image "{fname}" must be 3D, got shape {data.shape}.'
        )
    return data.astype(bool), affine


def format_header_description(values):
    """Pack scalar metadata as ``key=value`` pairs for the NIfTI descrip field.

    Parameters
    ----------
    values : dict
        Mapping of names to numbers.

    Returns
    -------
    description : str
        At most 80 characters, the size of the NIfTI-1 field.
    """
    description = ";".join(f"{key}={value:.6g}" for key, value in values.items())
    if len(description) > 80:
        raise ValueError(
            f"Header description longer than 80 characters: {description}"
        )
    return description


def parse_header_description(description):
    """Inverse of :func:`format_header_description`.

    Parameters
    ----------
    description : str or bytes

    Returns
    -------
    values : dict
        Mapping of names to floats; items that are not ``key=value`` pairs
        are ignored.
    """
    if isinstance(description, np.ndarray):
        description = description.item()
    if isinstance(description, bytes):
        description = description.decode("latin-1")
    description = description.strip("\x00 ")
    values = {}
    for item in description.split(";"):
        key, sep, value = item.partition("=")
        if not sep:
            continue
        try:
            values[key.strip()] = float(value)
        except ValueError:
            continue
    return values


def save_nifti(fname, data, affine, *, hdr=None, dtype=None, description=None):
    """Save a data array into a NIfTI file.

    Parameters
    ----------
    fname : str or Path
        The full path to the file to be saved.
    data : ndarray
        The array with the data to save.
    affine : 4x4 array
        The affine transform associated with the file.
    hdr : nifti header, optional
        May contain additional information to store in the file header.
    dtype : data type, optional
        Data type of the stored array.
    description : str, optional
        Text stored in the header ``descrip`` field.
    """
    if dtype is not None:
        data = data.astype(dtype)
    img = nib.Nifti1Image(data, affine, header=hdr)
    if hdr is not None:
        img.header.set_data_dtype(data.dtype)
    if description is not None:
        img.header["descrip"] = description
    nib.save(img, str(fname))


def save_balance_factors(fname, balance_factors):
    """Write the tissue balance factors, one per line.

    Parameters
    ----------
    fname : str or Path
    balance_factors : ndarray
    """
    np.savetxt(str(fname), np.asarray(balance_factors, dtype=np.float64), fmt="%.10g")


def load_balance_factors(fname):
    """Read balance factors written by :func:`save_balance_factors`."""
    return np.atleast_1d(np.loadtxt(str(Path(fname)), dtype=np.float64))

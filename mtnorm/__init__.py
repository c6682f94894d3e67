"""Multi-tissue log-domain intensity normalisation.

Subpackages
-----------
::

 io                -- Loading and saving of tissue volumes
 normalization     -- Balance factors, outlier rejection and field estimation
 utils             -- Logging and voxel-parallel helpers
 workflows         -- Command line flows
"""

__version__ = "0.1.0"

"""keypass_tx package root.

Transaction submission and confirmation engine for substrate parachains
(KILT) and EVM chains (Moonbeam).

The entry point is :py:class:`keypass_tx.submitter.TransactionSubmitter`.
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"keypass-tx-engine needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import numpy as np


@dataclass
class FitResult:
    """Unified solver result.

    The Levenberg-Marquardt wrapper adapts lmfit's ``MinimizerResult`` to this
    dataclass so the fit functions never depend on lmfit types.
    """

    success: bool
    solver: str
    theta: np.ndarray
    covariance: Optional[np.ndarray]
    cost: float
    nfev: int
    message: str = ""
    diagnostics: Dict[str, Any] = field(default_factory=dict)

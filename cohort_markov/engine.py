"""Discrete-time cohort state-transition simulation."""

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from cohort_markov.errors import DimensionMismatch, NonStochasticMatrix

# Analysis-unit columns copied into every long output table, when present
UNIT_ID_COLUMNS = ('strategy_id', 'patient_id', 'grp_id', 'transition_id')


def initial_occupancy(n_states: int, start: int = 0) -> np.ndarray:
    """Unit mass in state ``start``."""
    if not 0 <= start < n_states:
        raise ValueError(f"start state {start} is outside 0..{n_states - 1}")
    occupancy = np.zeros(n_states)
    occupancy[start] = 1.0
    return occupancy


def _check_initial(init: np.ndarray, n_states: int, tolerance: float) -> None:
    if init.shape[-1] != n_states:
        raise DimensionMismatch(
            f"Initial occupancy has {init.shape[-1]} states; transition matrices have {n_states}"
        )
    if np.any(init < 0.0):
        raise ValueError("Initial occupancy probabilities must be non-negative.")
    if np.any(np.abs(init.sum(axis=-1) - 1.0) > tolerance):
        raise NonStochasticMatrix("Initial occupancy does not sum to 1")


def validate_transition_matrices(transitions: np.ndarray,
                                 tolerance: float = 1e-9,
                                 absorbing: Optional[int] = None) -> None:
    """
    Check the stochastic-matrix invariant for every matrix in a ``(..., S, S)`` array.

    Raises ``NonStochasticMatrix`` naming the first offending position; the
    leading indices are reported as given (0-based).
    """
    transitions = np.asarray(transitions, dtype=float)
    if transitions.ndim < 2 or transitions.shape[-1] != transitions.shape[-2]:
        raise DimensionMismatch(f"Transition matrices must be square, got shape {transitions.shape}")

    bad_entries = (transitions < -tolerance) | (transitions > 1.0 + tolerance) | ~np.isfinite(transitions)
    if bad_entries.any():
        position = tuple(int(i) for i in np.argwhere(bad_entries)[0])
        raise NonStochasticMatrix(
            f"Transition probability {transitions[position]!r} lies outside [0, 1]",
            {'position': position},
        )

    row_sums = transitions.sum(axis=-1)
    bad_rows = np.abs(row_sums - 1.0) > tolerance
    if bad_rows.any():
        position = tuple(int(i) for i in np.argwhere(bad_rows)[0])
        raise NonStochasticMatrix(
            f"Row sums to {row_sums[position]!r} instead of 1",
            {'position': position},
        )

    if absorbing is not None:
        identity_row = np.zeros(transitions.shape[-1])
        identity_row[absorbing] = 1.0
        drift = np.abs(transitions[..., absorbing, :] - identity_row).max(axis=-1)
        if np.any(drift > tolerance):
            position = tuple(int(i) for i in np.argwhere(drift > tolerance)[0])
            raise NonStochasticMatrix(
                "Absorbing state row is not an identity row",
                {'position': position, 'row': absorbing},
            )


def simulate_stateprobs(transitions: np.ndarray,
                        init: Sequence[float],
                        n_cycles: int,
                        tolerance: float = 1e-9,
                        validate: bool = True,
                        sample_offset: int = 0) -> np.ndarray:
    """
    Simulate state occupancy probabilities forward for ``n_cycles`` cycles.

    Parameters
    ----------
    transitions:
        Array of shape ``(T, N, U, S, S)``. ``T == 1`` is time-homogeneous;
        ``T == n_cycles`` supplies the matrix for each cycle ``t -> t + 1``.
    init:
        Initial occupancy, either ``(S,)`` or broadcastable to ``(N, U, S)``.
    n_cycles:
        Number of cycles; the run never stops early, even once all mass is
        absorbed.
    tolerance:
        Allowed deviation of row and occupancy sums from 1.
    validate:
        Validate the matrices before simulating.
    sample_offset:
        Global index of the first sample in this batch, used in error context.

    Returns
    -------
    Array of shape ``(n_cycles + 1, N, U, S)``; index 0 is ``init`` exactly.
    """
    transitions = np.asarray(transitions, dtype=float)
    if transitions.ndim != 5 or transitions.shape[-1] != transitions.shape[-2]:
        raise DimensionMismatch(
            f"Expected transitions of shape (T, N, U, S, S), got {transitions.shape}"
        )
    if n_cycles <= 0:
        raise ValueError(f"n_cycles must be positive, got {n_cycles}")
    n_times, n_samples, n_units, n_states, _ = transitions.shape
    if n_times not in (1, n_cycles):
        raise DimensionMismatch(
            f"Time-varying transitions cover {n_times} cycles; the model runs {n_cycles}"
        )

    init = np.asarray(init, dtype=float)
    _check_initial(init, n_states, tolerance)
    if validate:
        validate_transition_matrices(transitions, tolerance)

    stateprobs = np.empty((n_cycles + 1, n_samples, n_units, n_states))
    stateprobs[0] = np.broadcast_to(init, (n_samples, n_units, n_states))
    for t in range(n_cycles):
        matrix = transitions[t if n_times > 1 else 0]
        stateprobs[t + 1] = np.einsum('nus,nusk->nuk', stateprobs[t], matrix)

    check_stateprobs(stateprobs, tolerance * max(n_cycles, 1), sample_offset)
    return stateprobs


def check_stateprobs(stateprobs: np.ndarray, tolerance: float = 1e-9, sample_offset: int = 0) -> None:
    """Detect occupancy vectors whose total drifted away from 1."""
    totals = stateprobs.sum(axis=-1)
    drift = np.abs(totals - 1.0) > tolerance
    if drift.any():
        t, n, u = (int(i) for i in np.argwhere(drift)[0])
        raise NonStochasticMatrix(
            f"State occupancy sums to {totals[t, n, u]!r} instead of 1",
            {'cycle': t, 'sample': sample_offset + n + 1, 'unit': u},
        )


def stateprobs_to_dataframe(stateprobs: np.ndarray,
                            units: pd.DataFrame,
                            state_names: Sequence[str],
                            cycle_length: float = 1.0,
                            sample_offset: int = 0) -> pd.DataFrame:
    """
    Long table of occupancy probabilities.

    One row per (sample, unit, cycle, state), with the unit identifier
    columns copied from ``units``.
    """
    n_times, n_samples, n_units, n_states = stateprobs.shape
    if len(units) != n_units:
        raise DimensionMismatch(f"{len(units)} analysis units for {n_units} simulated units")
    if len(state_names) != n_states:
        raise DimensionMismatch(f"{len(state_names)} state names for {n_states} states")

    # reorder to (sample, unit, cycle, state) so rows group naturally
    values = np.transpose(stateprobs, (1, 2, 0, 3))
    sample_idx, unit_idx, t_idx, state_idx = np.indices(values.shape).reshape(4, -1)

    frame = pd.DataFrame({'sample': sample_idx + sample_offset + 1})
    for column in UNIT_ID_COLUMNS:
        if column in units.columns:
            frame[column] = units[column].to_numpy()[unit_idx]
    frame['t'] = t_idx
    frame['time'] = t_idx * cycle_length
    frame['state_id'] = state_idx
    frame['state_name'] = np.asarray(state_names, dtype=object)[state_idx]
    frame['prob'] = values.reshape(-1)
    return frame

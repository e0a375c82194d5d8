"""
BeatChain: Complete Beat Analysis Pipeline

This module integrates the streaming components into a record-level pipeline:
- QRS detection (knowledge-based or Pan-Tompkins)
- Heartbeat assembly with optional P/T wave search
- RR interval series construction
- RR outlier correction

Features:
- Memory caching of processed records
- Parallel batch processing (one detector per record)
- Per-record failure isolation
- Tabular (pandas) export of beats and intervals

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

# System and Utility imports
import hashlib      # Cache keys from the configuration
import json         # Stable serialization of the configuration
import logging      # Tracking of per-record failures and batch progress
import os           # CPU count for parallel processing
import time         # Processing time per record
from dataclasses import dataclass, field  # Structured data containers for configs and results

# Type Hinting for robust and self-documenting code
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

# Concurrency for batch processing
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed

# Numerical computing
import numpy as np
import pandas as pd  # Tabular results

# Project modules
from beatchain.core.beats import Heartbeat
from beatchain.core.signal import Ecg, EcgLead
from beatchain.detection.base import QrsDetector
from beatchain.detection.elgendi import ElgendiConfig, ElgendiQrsDetector
from beatchain.detection.heartbeat import HeartbeatAssembler, WaveSearch
from beatchain.detection.pan_tompkins import PanTompkinsConfig, PanTompkinsDetector
from beatchain.hrv.correction import CorrectionConfig, CorrectionReport, RrIntervalCorrector
from beatchain.hrv.rr_intervals import RRIntervalList


# Setup logging
logger = logging.getLogger(__name__)

DETECTORS = ('elgendi', 'pan_tompkins')


@dataclass
class PipelineConfig:
    """Configuration for the beat analysis pipeline."""

    # Component configs
    detector: str = 'elgendi'  # 'elgendi' or 'pan_tompkins'
    elgendi_config: ElgendiConfig = field(default_factory=ElgendiConfig)
    pan_tompkins_config: PanTompkinsConfig = field(default_factory=PanTompkinsConfig)
    correction_config: CorrectionConfig = field(default_factory=CorrectionConfig)

    # Pipeline options
    correct_rr: bool = True
    keep_heartbeats: bool = True  # Keep the linked Heartbeat objects in the result

    # Caching
    enable_cache: bool = True

    # Parallel processing
    n_jobs: int = 1  # Number of parallel jobs (-1 for all CPUs)
    use_threading: bool = False  # Use threads instead of processes

    def __post_init__(self):
        if self.detector not in DETECTORS:
            raise ValueError(f"Unknown detector '{self.detector}', expected one of {DETECTORS}")
        if self.n_jobs == 0 or self.n_jobs < -1:
            raise ValueError(f"n_jobs must be -1 or >= 1, got {self.n_jobs}")

    def to_dict(self) -> Dict:
        """Convert to dictionary for hashing/serialization."""
        detector_config = (self.elgendi_config if self.detector == 'elgendi'
                           else self.pan_tompkins_config)
        return {
            'detector': self.detector,
            'detector_config': detector_config.to_dict(),
            'correct_rr': self.correct_rr,
            'correction_config': self.correction_config.to_dict() if self.correct_rr else None,
        }


@dataclass
class BeatAnalysisResult:
    """
    Results of analysing one ECG record.

    Attributes
    ----------
    record_id : str
        Identifier of the record.
    success : bool
        Whether the analysis completed.
    error_message : Optional[str]
        Error message if the analysis failed.
    processing_time_sec : float
        Time taken to process in seconds.
    sampling_rate : float
        Sampling rate in Hz.
    lead : str
        Lead the detector ran on.
    r_peaks : np.ndarray
        R-peak sample indices.
    beats : Optional[pd.DataFrame]
        One row per heartbeat (QRS features, RR, heart rate).
    rr_intervals : Optional[RRIntervalList]
        RR series, corrected when correction was enabled.
    correction : Optional[CorrectionReport]
        Outcome of the RR correction.
    heartbeats : Optional[List[Heartbeat]]
        Linked heartbeat chain. Kept in-process only: it is dropped when the
        result is pickled (parallel batches, caches on disk).
    """
    record_id: str
    success: bool
    error_message: Optional[str] = None
    processing_time_sec: float = 0.0

    sampling_rate: float = 0.0
    n_samples: int = 0
    lead: str = EcgLead.UNKNOWN.value

    r_peaks: np.ndarray = field(default_factory=lambda: np.array([], dtype=int))
    beats: Optional[pd.DataFrame] = None
    rr_intervals: Optional[RRIntervalList] = None
    correction: Optional[CorrectionReport] = None
    heartbeats: Optional[List[Heartbeat]] = None

    @property
    def n_beats(self) -> int:
        return len(self.r_peaks)

    @property
    def duration_sec(self) -> float:
        return self.n_samples / self.sampling_rate if self.sampling_rate else 0.0

    @property
    def heart_rate_bpm(self) -> Optional[float]:
        """Mean heart rate from the (corrected) RR series."""
        if self.rr_intervals is None or len(self.rr_intervals) == 0:
            return None
        return float(60000.0 / np.mean(self.rr_intervals.values_ms()))

    def __getstate__(self):
        state = self.__dict__.copy()
        state['heartbeats'] = None
        return state

    def to_dataframe(self) -> pd.DataFrame:
        """Per-beat table tagged with the record id."""
        frame = self.beats.copy() if self.beats is not None else pd.DataFrame()
        frame.insert(0, 'record_id', self.record_id)
        return frame

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        result = {
            'record_id': self.record_id,
            'success': self.success,
            'error_message': self.error_message,
            'processing_time_sec': self.processing_time_sec,
            'sampling_rate': self.sampling_rate,
            'duration_sec': self.duration_sec,
            'lead': self.lead,
            'n_beats': self.n_beats,
            'heart_rate_bpm': self.heart_rate_bpm,
        }

        if self.correction is not None:
            result['correction'] = self.correction.to_dict()

        return result


class BeatPipeline:
    """
    Complete beat analysis pipeline.

    This class orchestrates all steps for a stored record:
    1. Lead selection (preferred lead or its best match)
    2. QRS detection and R-peak refinement
    3. Heartbeat assembly (P/T wave search when collaborators are given)
    4. RR interval construction and outlier correction

    Parameters
    ----------
    config : PipelineConfig, optional
        Pipeline configuration. Uses defaults if not provided.
    p_wave_search, t_wave_search : WaveSearch, optional
        Wave delineation collaborators handed to the heartbeat assembler.

    Example
    -------
    >>> pipeline = BeatPipeline()
    >>> result = pipeline.process(ecg_signal, fs=360, record_id="100")
    >>> if result.success:
    ...     print(f"{result.n_beats} beats, {result.heart_rate_bpm:.1f} bpm")

    Notes
    -----
    - A failing record never aborts a batch; its result has ``success=False``
    - Each record gets fresh detector state
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        p_wave_search: Optional[WaveSearch] = None,
        t_wave_search: Optional[WaveSearch] = None
    ):
        self.config = config or PipelineConfig()
        self.p_wave_search = p_wave_search
        self.t_wave_search = t_wave_search
        self.corrector = RrIntervalCorrector(self.config.correction_config)

        self._cache: Dict[str, BeatAnalysisResult] = {}
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            'processed': 0,
            'successful': 0,
            'failed': 0,
            'cached': 0,
            'total_time': 0.0,
            'total_beats': 0,
        }

    def create_detector(self, ecg: Ecg) -> QrsDetector:
        """Fresh detector of the configured kind for ``ecg``."""
        if self.config.detector == 'pan_tompkins':
            return PanTompkinsDetector(ecg, self.config.pan_tompkins_config)
        return ElgendiQrsDetector(ecg, self.config.elgendi_config)

    def process(
        self,
        signal: np.ndarray,
        fs: float,
        record_id: str = "unknown",
        leads: Optional[Sequence[EcgLead]] = None,
        use_cache: bool = True
    ) -> BeatAnalysisResult:
        """
        Analyse a single ECG record.

        Parameters
        ----------
        signal : np.ndarray
            ECG samples, 1D or 2D (n_samples, n_leads).
        fs : float
            Sampling frequency in Hz.
        record_id : str
            Identifier used for caching and logging.
        leads : sequence of EcgLead, optional
            Lead of each column. A single column defaults to lead II.
        use_cache : bool
            Whether to use/update the cache.

        Returns
        -------
        BeatAnalysisResult
            Analysis results, or a failed result carrying the error message.
        """
        start_time = time.time()

        cache_key = self._get_cache_key(fs, record_id)
        if use_cache and self.config.enable_cache and cache_key in self._cache:
            self._stats['cached'] += 1
            return self._cache[cache_key]

        try:
            result = self._process_signal(signal, fs, record_id, leads)
            result.processing_time_sec = time.time() - start_time

            if use_cache and self.config.enable_cache:
                self._cache[cache_key] = result

            self._stats['processed'] += 1
            self._stats['successful'] += 1
            self._stats['total_time'] += result.processing_time_sec
            self._stats['total_beats'] += result.n_beats
            return result

        except Exception as e:
            logger.error(f"Error processing {record_id}: {str(e)}")
            self._stats['processed'] += 1
            self._stats['failed'] += 1

            return BeatAnalysisResult(
                record_id=record_id,
                success=False,
                error_message=str(e),
                processing_time_sec=time.time() - start_time,
                sampling_rate=fs,
            )

    def _process_signal(
        self,
        signal: np.ndarray,
        fs: float,
        record_id: str,
        leads: Optional[Sequence[EcgLead]]
    ) -> BeatAnalysisResult:
        """Internal processing logic."""
        ecg = Ecg.from_array(signal, fs, leads)
        detector = self.create_detector(ecg)
        assembler = HeartbeatAssembler(detector, self.p_wave_search, self.t_wave_search)

        heartbeats = assembler.find_heartbeats()
        r_peaks = np.array([beat.r_position for beat in heartbeats], dtype=int)
        logger.debug(f"{record_id}: {len(heartbeats)} beats on lead {detector.signal.lead.value}")

        rr_intervals = RRIntervalList.from_r_peaks(r_peaks, fs)
        correction = None
        if self.config.correct_rr and len(rr_intervals) > 0:
            correction = self.corrector.correct(rr_intervals)

        beats = pd.DataFrame([beat.to_dict() for beat in heartbeats])

        return BeatAnalysisResult(
            record_id=record_id,
            success=True,
            sampling_rate=fs,
            n_samples=len(ecg),
            lead=detector.signal.lead.value,
            r_peaks=r_peaks,
            beats=beats,
            rr_intervals=rr_intervals,
            correction=correction,
            heartbeats=heartbeats if self.config.keep_heartbeats else None,
        )

    def process_batch(
        self,
        records: List[Tuple[np.ndarray, float, str]],
        show_progress: bool = True,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> List[BeatAnalysisResult]:
        """
        Analyse multiple ECG records.

        Parameters
        ----------
        records : List[Tuple[np.ndarray, float, str]]
            List of (signal, fs, record_id) tuples.
        show_progress : bool
            Whether to log progress.
        progress_callback : Callable
            Optional callback for progress updates: callback(current, total).

        Returns
        -------
        List[BeatAnalysisResult]
            Results in input order.
        """
        n_total = len(records)
        results: List[Optional[BeatAnalysisResult]] = [None] * n_total

        if self.config.n_jobs == 1:
            # Sequential processing
            for i, (signal, fs, record_id) in enumerate(records):
                results[i] = self.process(signal, fs, record_id)

                if progress_callback:
                    progress_callback(i + 1, n_total)
                elif show_progress and (i + 1) % 100 == 0:
                    logger.info(f"Processed {i + 1}/{n_total} records")

        else:
            # Parallel processing
            n_workers = self.config.n_jobs if self.config.n_jobs > 0 else os.cpu_count()

            Executor = ThreadPoolExecutor if self.config.use_threading else ProcessPoolExecutor

            with Executor(max_workers=n_workers) as executor:
                # Record ids need not be unique, so results are placed by position
                futures = {
                    executor.submit(self._process_single, signal, fs, record_id): i
                    for i, (signal, fs, record_id) in enumerate(records)
                }

                completed = 0
                for future in as_completed(futures):
                    result = future.result()
                    results[futures[future]] = result
                    self._record_stats(result)
                    completed += 1

                    if progress_callback:
                        progress_callback(completed, n_total)
                    elif show_progress and completed % 100 == 0:
                        logger.info(f"Processed {completed}/{n_total} records")

        return results

    def _process_single(
        self,
        signal: np.ndarray,
        fs: float,
        record_id: str
    ) -> BeatAnalysisResult:
        """Process single record (for parallel execution)."""
        return self.process(signal, fs, record_id, use_cache=False)

    def _record_stats(self, result: BeatAnalysisResult) -> None:
        # Worker processes keep their own counters
        if self.config.use_threading:
            return
        self._stats['processed'] += 1
        self._stats['total_time'] += result.processing_time_sec
        if result.success:
            self._stats['successful'] += 1
            self._stats['total_beats'] += result.n_beats
        else:
            self._stats['failed'] += 1

    def _get_cache_key(self, fs: float, record_id: str) -> str:
        """Generate cache key from record id, rate and config."""
        config_str = json.dumps(self.config.to_dict(), sort_keys=True)
        config_hash = hashlib.md5(config_str.encode()).hexdigest()[:8]

        return f"{record_id}_{fs:g}_{config_hash}"

    def clear_cache(self):
        """Clear all cached results."""
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get processing statistics."""
        stats = self._stats.copy()
        if stats['processed'] > 0:
            stats['success_rate'] = stats['successful'] / stats['processed']
            stats['avg_time_sec'] = stats['total_time'] / stats['processed']
        else:
            stats['success_rate'] = 0.0
            stats['avg_time_sec'] = 0.0
        return stats

    def reset_stats(self):
        """Reset processing statistics."""
        self._stats = self._empty_stats()

    def __repr__(self) -> str:
        stages = [self.config.detector, "heartbeats"]
        if self.config.correct_rr:
            stages.append("rr_correction")

        return f"BeatPipeline(stages=[{', '.join(stages)}])"


def create_pipeline(
    detector: str = 'elgendi',
    correct_rr: bool = True,
    enable_cache: bool = True,
    n_jobs: int = 1
) -> BeatPipeline:
    """
    Convenience function to create a beat analysis pipeline.

    Parameters
    ----------
    detector : str
        'elgendi' or 'pan_tompkins'.
    correct_rr : bool
        Whether to correct RR outliers.
    enable_cache : bool
        Whether to enable result caching.
    n_jobs : int
        Number of parallel jobs.

    Returns
    -------
    BeatPipeline
        Configured pipeline.
    """
    config = PipelineConfig(
        detector=detector,
        correct_rr=correct_rr,
        enable_cache=enable_cache,
        n_jobs=n_jobs,
    )

    return BeatPipeline(config)


def process_ecg(
    signal: np.ndarray,
    fs: float,
    record_id: str = "unknown",
    leads: Optional[Sequence[EcgLead]] = None
) -> BeatAnalysisResult:
    """
    Convenience function to analyse a single ECG.

    Parameters
    ----------
    signal : np.ndarray
        ECG samples.
    fs : float
        Sampling frequency in Hz.
    record_id : str
        Identifier for the ECG.
    leads : sequence of EcgLead, optional
        Lead of each column.

    Returns
    -------
    BeatAnalysisResult
        Analysis results.
    """
    pipeline = BeatPipeline()
    return pipeline.process(signal, fs, record_id, leads, use_cache=False)

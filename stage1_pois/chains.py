"""
Chain Store Detection

Separates branded chain stores from independents inside one category (by
default ``Supermarket``) using the frequency of their free-text attributes.

Pass 1 (``fit``) counts the normalized ``name`` / ``brand`` / ``operator``
values of every qualifying feature; each value occurring at least
``threshold`` times is a major chain name. Pass 2 (``transform``) keeps the
original class of a feature whose values start with a major chain name
(followed by a non-word character or the end of the string) and moves every
other qualifying feature to the fallback category.

Features with a non-null exemption attribute (``origin``, i.e. ethnic or
specialty stores) are neither counted nor reclassified.

Scope of pass 1 is explicit: ``"global"`` fits one table over all cities of
a run, ``"city"`` fits one table per city.
"""

import logging
import re
from collections import Counter
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd

from stage1_pois.scheme import ClassificationScheme

logger = logging.getLogger(__name__)

CHAIN_SCOPES = ("global", "city")

DEFAULT_CHAIN_ATTRIBUTES = ("name", "brand", "operator")


def normalize_text(value: object) -> Optional[str]:
    """Lower-case and collapse whitespace; None for missing or blank values."""
    if value is None or value is pd.NA or (isinstance(value, float) and value != value):
        return None
    text = " ".join(str(value).lower().split())
    return text or None


class ChainDetector:
    """Two-pass chain detector for one target category.

    Usage::

        detector = ChainDetector(scheme, target_class_a="Supermarket",
                                 fallback_class_a="Food Store")
        detector.fit([amsterdam_pois, rotterdam_pois])
        amsterdam_pois = detector.transform(amsterdam_pois)
    """

    def __init__(
        self,
        scheme: ClassificationScheme,
        target_class_a: str = "Supermarket",
        fallback_class_a: str = "Food Store",
        threshold: int = 5,
        exempt_attribute: Optional[str] = "origin",
        attributes: Sequence[str] = DEFAULT_CHAIN_ATTRIBUTES,
    ):
        if threshold < 1:
            raise ValueError(f"Chain threshold must be >= 1, got {threshold}")
        if fallback_class_a not in scheme.hierarchy:
            raise ValueError(
                f"Fallback category {fallback_class_a!r} is not part of the classification scheme"
            )
        self.scheme = scheme
        self.target_class_a = target_class_a
        self.fallback_class_a = fallback_class_a
        self.fallback_class_b, self.fallback_class_c = scheme.lookup(fallback_class_a)
        self.threshold = threshold
        self.exempt_attribute = exempt_attribute
        self.attributes = tuple(attributes)

        self.counts: Counter = Counter()
        self.major_names: FrozenSet[str] = frozenset()
        self._pattern: Optional[re.Pattern] = None
        self._fitted = False

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    def qualifying_mask(self, features_gdf: pd.DataFrame) -> pd.Series:
        """Features of the target category that are not exempt."""
        mask = features_gdf["Class_A"] == self.target_class_a
        if self.exempt_attribute and self.exempt_attribute in features_gdf.columns:
            mask &= features_gdf[self.exempt_attribute].isna()
        return mask.fillna(False).astype(bool)

    def _normalized_values(self, features_gdf: pd.DataFrame) -> List[Tuple[Optional[str], ...]]:
        """Normalized chain attributes per row; missing attributes are None."""
        columns = []
        for attribute in self.attributes:
            if attribute in features_gdf.columns:
                columns.append([normalize_text(value) for value in features_gdf[attribute].tolist()])
            else:
                columns.append([None] * len(features_gdf))
        return list(zip(*columns)) if columns else [()] * len(features_gdf)

    def _matches_chain(self, texts: Iterable[Optional[str]]) -> bool:
        if self._pattern is None:
            return False
        return any(isinstance(text, str) and self._pattern.match(text) is not None for text in texts)

    # -----------------------------------------------------------------
    # Pass 1
    # -----------------------------------------------------------------

    def fit(self, features: Iterable[pd.DataFrame]) -> "ChainDetector":
        """Build the frequency table over one or more classified feature frames."""
        if isinstance(features, pd.DataFrame):
            features = [features]

        counts: Counter = Counter()
        n_qualifying = 0
        for features_gdf in features:
            qualifying = features_gdf[self.qualifying_mask(features_gdf)]
            n_qualifying += len(qualifying)
            for texts in self._normalized_values(qualifying):
                counts.update(text for text in texts if isinstance(text, str))

        self.counts = counts
        self.major_names = frozenset(
            value for value, count in counts.items() if count >= self.threshold
        )
        if self.major_names:
            alternatives = "|".join(
                re.escape(name) for name in sorted(self.major_names, key=len, reverse=True)
            )
            self._pattern = re.compile(rf"^(?:{alternatives})(?!\w)")
        else:
            self._pattern = None
        self._fitted = True

        logger.info(
            f"Chain detection for {self.target_class_a!r}: {n_qualifying:,} qualifying features, "
            f"{len(counts):,} distinct strings, {len(self.major_names)} major chain names "
            f"(threshold {self.threshold})"
        )
        return self

    # -----------------------------------------------------------------
    # Pass 2
    # -----------------------------------------------------------------

    def is_chain(self, values: Iterable[object]) -> bool:
        """True if any value starts with a major chain name at a word boundary."""
        return self._matches_chain(normalize_text(value) for value in values)

    def transform(self, features_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Reclassify qualifying non-chain features to the fallback category."""
        if not self._fitted:
            raise RuntimeError("ChainDetector.transform called before fit")

        gdf = features_gdf.copy()
        qualifying = self.qualifying_mask(gdf)
        if not qualifying.any():
            return gdf

        rows = self._normalized_values(gdf[qualifying])
        chain = pd.Series(
            [self._matches_chain(texts) for texts in rows],
            index=gdf.index[qualifying.to_numpy()],
            dtype=bool,
        )

        reclassify = chain.index[~chain]
        gdf.loc[reclassify, "Class_A"] = self.fallback_class_a
        gdf.loc[reclassify, "Class_B"] = self.fallback_class_b
        gdf.loc[reclassify, "Class_C"] = self.fallback_class_c

        logger.info(
            f"Kept {int(chain.sum()):,} chain {self.target_class_a!r} features, "
            f"reclassified {len(reclassify):,} to {self.fallback_class_a!r}"
        )
        return gdf

    def fit_transform(self, features_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        return self.fit([features_gdf]).transform(features_gdf)


def detect_chains(
    features_by_city: Dict[str, gpd.GeoDataFrame],
    scheme: ClassificationScheme,
    scope: str = "global",
    **detector_kwargs,
) -> Tuple[Dict[str, gpd.GeoDataFrame], Dict[str, FrozenSet[str]]]:
    """Run chain detection over all cities with an explicit frequency scope.

    Args:
        features_by_city: Classified features per city.
        scheme: Classification scheme (for the fallback hierarchy).
        scope: ``"global"`` (one table across all cities) or ``"city"``.
        **detector_kwargs: Passed to ``ChainDetector``.

    Returns:
        Tuple of (reclassified features per city, major chain names per city).
        With the global scope every city shares the same frozen name set.
    """
    if scope not in CHAIN_SCOPES:
        raise ValueError(f"Unknown chain scope {scope!r}. Valid: {CHAIN_SCOPES}")

    results = {}
    names = {}
    if scope == "global":
        detector = ChainDetector(scheme, **detector_kwargs).fit(features_by_city.values())
        for city, features_gdf in features_by_city.items():
            results[city] = detector.transform(features_gdf)
            names[city] = detector.major_names
    else:
        for city, features_gdf in features_by_city.items():
            detector = ChainDetector(scheme, **detector_kwargs).fit([features_gdf])
            results[city] = detector.transform(features_gdf)
            names[city] = detector.major_names
    return results, names

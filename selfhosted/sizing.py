"""Pick a VM size and region for a set of minimum specs."""

from collections.abc import Iterable

from .types import Region, Size, Specs


def is_candidate(size: Size, specs: Specs) -> bool:
    """Check a size meets the specs. Disk only counts when specs.disk_gb > 0."""
    if size.vcpus < specs.cpus or size.memory_mb < specs.memory_mb:
        return False
    if specs.disk_gb > 0 and size.disk_gb < specs.disk_gb:
        return False
    return True


def pick_best_size_for_specs(sizes: Iterable[Size], specs: Specs) -> Size | None:
    """Pick the cheapest size that satisfies the specs.

    When any candidate reports a monthly price, unpriced candidates are
    ignored and the lowest price wins. Without prices, the smallest size by
    vCPUs, then memory, then disk wins. Ties keep the first size seen, so the
    result only depends on the order of the catalog.

    :param sizes: Sizes offered by a provider, in catalog order
    :param specs: Minimum requirements
    :return: Best matching size, or None if nothing satisfies the specs
    """
    candidates = [s for s in sizes if is_candidate(s, specs)]
    if not candidates:
        return None

    priced = [s for s in candidates if s.price_monthly > 0]
    if priced:
        # min() returns the first minimal element
        return min(priced, key=lambda s: s.price_monthly)
    return min(candidates, key=lambda s: (s.vcpus, s.memory_mb, s.disk_gb))


def select_region(regions: Iterable[Region], wanted: str, default: str) -> str:
    """Return wanted if it is an available region, else the provider default."""
    if wanted and any(r.slug == wanted and r.available for r in regions):
        return wanted
    return default

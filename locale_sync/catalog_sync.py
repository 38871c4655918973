from typing import Dict, Iterable, List, Tuple


def compute_diff(target: Dict[str, str], reference: Dict[str, str]) -> Dict[str, str]:
    """
    Finds the reference entries a target catalog is missing.

    Only additions are detected. Keys removed from the reference, or whose
    reference value changed, are not reported, so stale target values are
    kept as they are.

    Args:
        target: The target locale catalog.
        reference: The reference locale catalog.

    Returns:
        The missing keys with their reference values, in reference order.
        Empty when the target already has every reference key.
    """
    return {key: value for key, value in reference.items() if key not in target}


def chunk_diff(diff: Dict[str, str], size: int) -> List[Dict[str, str]]:
    """
    Splits a diff into order-preserving chunks of at most ``size`` entries.

    Args:
        diff: The entries to split.
        size: Maximum entries per chunk. The last chunk may be smaller.

    Returns:
        The chunks, in the diff's order. An empty diff gives an empty list.
    """
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}.")

    keys = list(diff.keys())
    return [
        {key: diff[key] for key in keys[i:i + size]}
        for i in range(0, len(keys), size)
    ]


def merge_catalogs(
        existing_target: Dict[str, str],
        translated_chunks: Iterable[Dict[str, str]],
        reference_keys: Iterable[str],
        diff_keys: Iterable[str]
) -> Tuple[Dict[str, str], List[str]]:
    """
    Combines the existing target catalog with freshly translated chunks.

    Args:
        existing_target: The target catalog as it was loaded.
        translated_chunks: Translation results, in chunk order. Later chunks win on collision.
        reference_keys: The reference catalog's keys, in reference order.
        diff_keys: The keys that were sent for translation.

    Returns:
        A tuple containing:
        - The final catalog: only reference keys, in reference order. Keys with
          no value anywhere are omitted.
        - The diff keys whose final value is new or differs from the existing one.
    """
    combined = dict(existing_target)
    for chunk in translated_chunks:
        combined.update(chunk)

    final_catalog = {key: combined[key] for key in reference_keys if key in combined}

    newly_added_keys = [
        key for key in diff_keys
        if key in final_catalog and final_catalog[key] != existing_target.get(key)
    ]
    return final_catalog, newly_added_keys

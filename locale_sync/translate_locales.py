import asyncio
import json
import logging
import os
import random
import sys
from contextlib import nullcontext
from typing import Dict, List, Optional, Set, Tuple

from aiolimiter import AsyncLimiter
from tqdm.asyncio import tqdm

from locale_sync.app_config import AppConfig, load_app_config
from locale_sync.catalog import CatalogError, load_catalog, load_catalog_if_exists, write_catalog
from locale_sync.catalog_sync import chunk_diff, compute_diff, merge_catalogs
from locale_sync.logging_config import LOGGER_NAME
from locale_sync.summary import SummaryLog
from locale_sync.translator_client import TranslationError, TranslationSuccess

# Stays a child of the package logger even when run as __main__.
logger = logging.getLogger(f"{LOGGER_NAME}.translate_locales")

CATALOG_EXTENSION = '.json'


class ReferenceLocaleError(Exception):
    """The reference locale directory is missing or unreadable. Aborts the run."""


def _language_label(locale: str, language_codes: Optional[Dict[str, str]]) -> str:
    name = (language_codes or {}).get(locale)
    return f"{name} ({locale})" if name else locale


def build_translation_prompt(
        chunk: Dict[str, str],
        source_locale: str,
        target_locale: str,
        attempt: int = 1,
        full_translation: bool = False,
        language_codes: Optional[Dict[str, str]] = None
) -> str:
    """
    Build the prompt for one chunk. The chunk is embedded as a fenced JSON block.

    From the second attempt on the prompt insists on well-formed JSON, since the
    most common failure is an answer that cannot be parsed.
    """
    source_label = _language_label(source_locale, language_codes)
    target_label = _language_label(target_locale, language_codes)
    payload = json.dumps(chunk, ensure_ascii=False, indent=2)

    lines = [
        "You are an assistant that translates only the values of a JSON object.",
        "",
        f"Translate the values of the JSON object below from {source_label} to {target_label}.",
        "Keep every key exactly as it is in the original JSON object.",
        "Use double quotes for every JSON string and do not add escaped quotes around values.",
        "Work out the context of the texts from the keys and values. Do not translate proper names.",
    ]
    if full_translation:
        lines.append("Some values may already be translated; keep those as they are and translate only what is needed.")
    lines.extend([
        "Return ONLY a valid JSON object mapping each key to its translated value. "
        "No explanations, comments or any text outside the JSON.",
    ])
    if attempt > 1:
        lines.append("The previous answer could not be parsed as JSON. Make sure the answer is valid, well-formed JSON.")
    lines.extend([
        "",
        "```json",
        payload,
        "```",
    ])
    return "\n".join(lines)


def _retry_delay(attempt: int, base_delay: float, retry_after: Optional[float]) -> float:
    """Exponential backoff with jitter, unless the service told us how long to wait."""
    if retry_after is not None:
        return max(retry_after, 0.0)
    if base_delay <= 0:
        return 0.0
    return base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay)


async def translate_chunk_with_retry(
        client,
        chunk: Dict[str, str],
        target_locale: str,
        file_name: str,
        summary: SummaryLog,
        source_locale: str,
        max_retries: int = 3,
        retry_base_delay: float = 0.0,
        full_translation: bool = False,
        language_codes: Optional[Dict[str, str]] = None,
        semaphore: Optional[asyncio.Semaphore] = None,
        rate_limiter: Optional[AsyncLimiter] = None
) -> Dict[str, str]:
    """
    Translate one chunk, retrying failed attempts up to ``max_retries`` times in total.

    Every failed attempt adds a summary entry for ``(target_locale, file_name, attempt)``.
    A successful answer is returned as-is, even if it has fewer or more keys than
    the chunk; merging sorts that out. Never raises: when the last attempt fails
    the chunk is dropped for this run and an empty mapping is returned.

    Args:
        client: Translator exposing ``async invoke(prompt, target_locale)``.
        chunk: The reference entries to translate.
        target_locale: Locale to translate into.
        file_name: Catalog file name, for messages.
        summary: The run's summary log.
        source_locale: The reference locale.
        max_retries: Total number of attempts.
        retry_base_delay: Base of the exponential backoff in seconds; 0 disables waiting.
        full_translation: Whether the whole reference catalog is being re-sent.
        language_codes: Optional code -> language name mapping for the prompt.
        semaphore: Shared ceiling on in-flight service calls.
        rate_limiter: Shared requests-per-period limiter.

    Returns:
        Dict[str, str]: The translated entries, or ``{}`` after exhausted retries.
    """
    location = f"{target_locale}/{file_name}"
    concurrency_guard = semaphore if semaphore is not None else nullcontext()
    rate_guard = rate_limiter if rate_limiter is not None else nullcontext()

    for attempt in range(1, max_retries + 1):
        prompt = build_translation_prompt(
            chunk,
            source_locale,
            target_locale,
            attempt=attempt,
            full_translation=full_translation,
            language_codes=language_codes
        )

        try:
            async with concurrency_guard, rate_guard:
                result = await client.invoke(prompt, target_locale)
        except Exception as general_exc:
            logger.error(f"Unexpected error translating ({location}): {general_exc}", exc_info=True)
            result = TranslationError(kind=general_exc.__class__.__name__, message=str(general_exc))

        if isinstance(result, TranslationSuccess):
            logger.debug(f"Translated {len(result.data)} key(s) for ({location}) on attempt {attempt}.")
            return result.data

        summary.add(
            target_locale,
            f"Attempt {attempt}/{max_retries} failed for ({location}): {result.kind}: {result.message}"
        )
        logger.warning(f"Attempt {attempt}/{max_retries} failed for ({location}): {result.kind} - {result.message}")

        if attempt < max_retries:
            delay = _retry_delay(attempt, retry_base_delay, result.retry_after)
            if delay > 0:
                logger.info(f"Retrying ({location}) in {delay:.2f} seconds (Attempt {attempt}/{max_retries})")
                await asyncio.sleep(delay)

    logger.error(f"Translation failed for {len(chunk)} key(s) in ({location}) after {max_retries} attempts.")
    summary.add(
        target_locale,
        f"Giving up on {len(chunk)} key(s) for ({location}) after {max_retries} attempts; "
        f"they will be retried on the next run."
    )
    return {}


class LocaleSynchronizer:
    """
    Propagates keys added to the reference locale into every other locale.

    One instance drives one run: every (reference file x target locale) pair
    gets its own isolated pipeline, all pipelines run concurrently, and all
    translator calls share one semaphore and one rate limiter.
    """

    def __init__(self, config: AppConfig, summary: Optional[SummaryLog] = None):
        self.config = config
        self.summary = summary if summary is not None else SummaryLog()
        # Reference file paths already scheduled in this run
        self.processed_files: Set[str] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._rate_limiter: Optional[AsyncLimiter] = None

    @property
    def reference_dir(self) -> str:
        return os.path.join(self.config.locales_root, self.config.reference_locale)

    def discover(self) -> Tuple[List[str], List[str]]:
        """
        List the target locales and the reference catalog file names.

        Raises:
            ReferenceLocaleError: If the locales root or the reference locale cannot be read.
        """
        root = self.config.locales_root
        reference_locale = self.config.reference_locale
        try:
            locale_dirs = sorted(
                entry for entry in os.listdir(root)
                if os.path.isdir(os.path.join(root, entry))
            )
            reference_files = sorted(
                entry for entry in os.listdir(self.reference_dir)
                if entry.endswith(CATALOG_EXTENSION) and os.path.isfile(os.path.join(self.reference_dir, entry))
            )
        except OSError as e:
            raise ReferenceLocaleError(
                f"Could not read reference locale '{reference_locale}' under '{root}': {e}"
            ) from e

        target_locales = [locale for locale in locale_dirs if locale != reference_locale]
        return target_locales, reference_files

    async def run(self) -> SummaryLog:
        """
        Synchronize every target locale with the reference locale.

        Returns:
            The run's summary log.

        Raises:
            ReferenceLocaleError: If the reference locale directory cannot be read.
        """
        if self.config.translator_client is None and not self.config.dry_run:
            raise ValueError("A translator client is required unless dry_run is enabled.")

        target_locales, reference_files = self.discover()
        reference_locale = self.config.reference_locale
        logger.info(
            f"Reference locale '{reference_locale}': {len(reference_files)} file(s), "
            f"{len(target_locales)} target locale(s)."
        )

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_api_calls)
        self._rate_limiter = AsyncLimiter(max_rate=self.config.requests_per_minute, time_period=60)

        pipelines = []
        for file_name in reference_files:
            reference_path = os.path.abspath(os.path.join(self.reference_dir, file_name))
            if reference_path in self.processed_files:
                continue
            self.processed_files.add(reference_path)

            try:
                reference_catalog = load_catalog(reference_path)
            except (CatalogError, OSError) as e:
                logger.error(f"Skipping reference file '{reference_path}': {e}")
                self.summary.add(
                    reference_locale,
                    f"Error reading reference file ({reference_locale}/{file_name}): {e}"
                )
                continue

            for locale in target_locales:
                pipelines.append(self._run_isolated(locale, file_name, reference_catalog))

        if not pipelines:
            logger.info("Nothing to synchronize.")
            return self.summary

        await tqdm.gather(
            *pipelines,
            desc="Synchronizing locales",
            unit="file",
            disable=not self.config.show_progress
        )
        return self.summary

    async def _run_isolated(self, locale: str, file_name: str, reference_catalog: Dict[str, str]) -> List[str]:
        try:
            return await self.sync_file_for_locale(locale, file_name, reference_catalog)
        except Exception as e:
            logger.exception("Unexpected error while synchronizing (%s/%s)", locale, file_name)
            self.summary.add(locale, f"Unexpected error while synchronizing ({locale}/{file_name}): {e}")
            return []

    async def sync_file_for_locale(
            self,
            locale: str,
            file_name: str,
            reference_catalog: Dict[str, str]
    ) -> List[str]:
        """
        Run the diff -> chunk -> translate -> merge -> write pipeline for one file of one locale.

        Returns:
            The keys whose values were added or changed and written to disk.
        """
        config = self.config
        reference_locale = config.reference_locale
        location = f"{locale}/{file_name}"
        reference_location = f"{reference_locale}/{file_name}"
        target_path = os.path.join(config.locales_root, locale, file_name)

        file_exists = os.path.exists(target_path)
        try:
            target_catalog = load_catalog_if_exists(target_path)
        except (CatalogError, OSError) as e:
            logger.error(f"Could not read '{target_path}': {e}")
            self.summary.add(locale, f"Error reading file ({location}), skipping it: {e}")
            return []

        diff = compute_diff(target_catalog, reference_catalog)
        if config.full_translation:
            diff = dict(reference_catalog)

        if not diff:
            logger.info(f"No difference between ({location}) and ({reference_location}).")
            self.summary.add(locale, f"No difference between ({location}) and ({reference_location}).")
            return []

        if file_exists:
            self.summary.add(
                locale,
                f"Difference of {len(diff)} key(s) between ({location}) and ({reference_location})."
            )
        else:
            self.summary.add(
                locale,
                f"New file needed: {len(diff)} key(s) to translate for ({location}) from ({reference_location})."
            )

        if config.dry_run:
            logger.info(f"[Dry Run] Would translate {len(diff)} key(s) into '{target_path}'.")
            self.summary.add(locale, f"[Dry Run] Would translate {len(diff)} key(s) for ({location}).")
            return []

        chunks = chunk_diff(diff, config.chunk_size)
        logger.info(f"Translating {len(diff)} key(s) for ({location}) in {len(chunks)} chunk(s)...")

        translated_chunks = await asyncio.gather(*(
            translate_chunk_with_retry(
                config.translator_client,
                chunk,
                locale,
                file_name,
                self.summary,
                source_locale=reference_locale,
                max_retries=config.max_retries,
                retry_base_delay=config.retry_base_delay,
                full_translation=config.full_translation,
                language_codes=config.language_codes,
                semaphore=self._semaphore,
                rate_limiter=self._rate_limiter
            )
            for chunk in chunks
        ))

        final_catalog, newly_added_keys = merge_catalogs(
            target_catalog,
            translated_chunks,
            reference_catalog.keys(),
            diff.keys()
        )

        if not newly_added_keys:
            logger.info(f"No new values were added to ({location}).")
            self.summary.add(locale, f"({location}) -> No new values were added.")
            return []

        try:
            write_catalog(target_path, final_catalog)
        except OSError as e:
            logger.error(f"Error saving file '{target_path}': {e}")
            self.summary.add(locale, f"Error saving file ({location}): {e}")
            return []

        logger.info(f"Saved {len(newly_added_keys)} new value(s) to '{target_path}'.")
        self.summary.add(locale, f"({location}) -> Values added: {len(newly_added_keys)}")
        return newly_added_keys


async def main() -> int:
    """
    Load configuration, synchronize all locales and print the summary.

    Returns:
        The process exit code. Partial translation failures still exit 0.
    """
    config = load_app_config()
    synchronizer = LocaleSynchronizer(config)

    try:
        summary = await synchronizer.run()
    except ReferenceLocaleError as e:
        logger.critical(f"CRITICAL: {e}")
        return 1

    summary.report()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

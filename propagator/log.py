import logging
import os
import sys


def _on_azure_pipelines() -> bool:
    return bool(os.environ.get('TF_BUILD'))


def setup_logging(level: str = 'INFO'):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def start_log_group(title: str):
    if _on_azure_pipelines():
        print(f"##[group]{title}", flush=True)
    else:
        print(f"::group::{title}", flush=True)


def end_log_group():
    if _on_azure_pipelines():
        print("##[endgroup]", flush=True)
    else:
        print("::endgroup::", flush=True)


def log_error(message: str):
    if _on_azure_pipelines():
        print(f"##vso[task.logissue type=error]{message}", flush=True)
    else:
        print(f"::error::{message}", flush=True)

"""
pocscan - Command Builder
Turns a task into a nuclei argv, staging large template selections into one directory.
"""

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

from pocscan.config import EngineConfig, NucleiOptions
from pocscan.staging import StagingResult, TempManager, resolve_template_path


@dataclass
class ScanCommand:
    """A ready-to-exec nuclei invocation."""
    argv: List[str]
    staging_dir: Optional[Path] = None
    staging: Optional[StagingResult] = None
    template_flags: int = 0

    def display(self) -> str:
        return shlex.join(self.argv)


def base_args(targets_file: str, output_file: str, options: NucleiOptions) -> List[str]:
    """Flags every scan needs for the stream parser to work."""
    return [
        "-l", str(targets_file),
        "-jle", str(output_file),
        "-jsonl",
        "-include-rr",
        "-stats",
        "-stats-json",
        "-stats-interval", "2",
        "-debug",
        "-timeout", str(options.request_timeout),
        "-retries", str(options.retries),
        "-nc",
        "-v",
    ]


def option_args(options: NucleiOptions) -> List[str]:
    """Pass-through tuning flags, only the ones that are set."""
    args: List[str] = []
    if options.concurrency > 0:
        args += ["-c", str(options.concurrency)]
    if options.bulk_size > 0:
        args += ["-bs", str(options.bulk_size)]
    if options.rate_limit > 0:
        args += ["-rl", str(options.rate_limit)]
    if options.rate_limit_minute > 0:
        args += ["-rlm", str(options.rate_limit_minute)]

    if options.proxy_enabled:
        proxies = [p for p in options.proxy_list if p] or ([options.proxy_url] if options.proxy_url else [])
        if proxies:
            args += ["-proxy", ",".join(proxies)]
            if options.proxy_internal:
                args.append("-proxy-internal")

    if options.interactsh_disable:
        args.append("-no-interactsh")
    elif options.interactsh_enabled:
        if options.interactsh_server:
            args += ["-interactsh-server", options.interactsh_server]
        if options.interactsh_token:
            args += ["-interactsh-token", options.interactsh_token]

    if options.max_host_error > 0:
        args += ["-mhe", str(options.max_host_error)]
    if options.disable_update_check:
        args.append("-duc")
    if options.follow_redirects:
        args.append("-fr")
        if options.max_redirects > 0:
            args += ["-mr", str(options.max_redirects)]
    return args


class CommandBuilder:
    """Builds the nuclei command line for a task."""

    def __init__(self, config: EngineConfig, temp_manager: TempManager):
        self.config = config
        self.temp_manager = temp_manager

    def template_args(self, templates: List[str]) -> List[str]:
        args: List[str] = []
        for template in templates:
            args += ["-t", str(resolve_template_path(self.config.templates_dir, template))]
        return args

    def build(self, task_id: int, templates: List[str], targets_file: str, output_file: str) -> ScanCommand:
        """
        Build the argv for one scan.

        More than `staging_threshold` templates are copied into a staging
        directory passed as a single -t. If staging yields nothing usable the
        templates are passed one -t each; templates that individually failed
        to copy are still passed as their own -t.
        """
        options = self.config.options
        argv = [self.config.nuclei_path]
        argv += base_args(targets_file, output_file, options)
        argv += option_args(options)

        staging: Optional[StagingResult] = None
        staging_dir: Optional[Path] = None
        if len(templates) > self.config.staging_threshold:
            staging = self.temp_manager.create_temp_dir(task_id, templates)
            if staging.usable:
                staging_dir = staging.path
            else:
                logger.warning(
                    f"[CommandBuilder] Staging failed for task {task_id}, "
                    f"falling back to {len(templates)} individual -t flags"
                )
                self.temp_manager.cleanup_temp_dir(staging.path)

        if staging_dir is not None:
            argv += ["-t", str(staging_dir)]
            leftovers = self.template_args(staging.failed_paths)
            argv += leftovers
            template_flags = 1 + len(leftovers) // 2
        else:
            per_template = self.template_args(templates)
            argv += per_template
            template_flags = len(per_template) // 2

        cmd = ScanCommand(argv=argv, staging_dir=staging_dir, staging=staging, template_flags=template_flags)
        logger.debug(f"[CommandBuilder] Task {task_id}: {cmd.display()}")
        return cmd

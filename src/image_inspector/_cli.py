# Copyright 2025 The Sigstore Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""The main entry-point for the image_inspector package."""

import contextlib
import json
import logging
import pathlib
import sys
from typing import Any

import click

import image_inspector
from image_inspector._oci.discovery import DEFAULT_MAX_WORKERS
from image_inspector._oci.registry import DEFAULT_TIMEOUT
from image_inspector.referrers import Category


class NoOpTracer:
    def start_as_current_span(self, name):
        @contextlib.contextmanager
        def noop_context():
            class NoOpSpan:
                def set_attribute(self, key, value):
                    pass

            yield NoOpSpan()

        return noop_context()


# Global tracer variable, we will initialized this within the main() function
tracer = None


# Decorator for the commonly used argument for the image reference.
_image_argument = click.argument("image", type=str, metavar="IMAGE")

# Decorators for the arguments naming a document in a repository.
_repository_argument = click.argument(
    "repository", type=str, metavar="REPOSITORY"
)
_digest_argument = click.argument("digest", type=str, metavar="DIGEST")


# Decorator for the commonly used option to log discovery traces.
_verbose_option = click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Log every discovery step at INFO level.",
)

# Decorator for the commonly used option to talk plain HTTP to a registry.
_insecure_option = click.option(
    "--insecure",
    is_flag=True,
    default=False,
    help="Use HTTP instead of HTTPS to access the registry.",
)

# Decorator for the commonly used option to skip TLS verification.
_tls_verify_option = click.option(
    "--tls-verify/--no-tls-verify",
    type=bool,
    default=True,
    show_default=True,
    help="Verify the registry's TLS certificate.",
)

# Decorator for the commonly used option to set the registry timeout.
_timeout_option = click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_TIMEOUT,
    show_default=True,
    help="Timeout in seconds for each registry request.",
)

# Decorator for the commonly used option to bound discovery concurrency.
_max_workers_option = click.option(
    "--max-workers",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_WORKERS,
    show_default=True,
    help="How many discovery probes may run at the same time.",
)


def _config(
    verbose: bool,
    insecure: bool = False,
    tls_verify: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> image_inspector.inspecting.Config:
    if verbose:
        # Traces are logged at INFO, which the default level would hide.
        package_logger = logging.getLogger("image_inspector")
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)
    return (
        image_inspector.inspecting.Config()
        .set_verbose(verbose)
        .set_registry_options(
            insecure=insecure, tls_verify=tls_verify, timeout=timeout
        )
        .set_max_workers(max_workers)
    )


def _echo_json(value: Any) -> None:
    click.echo(json.dumps(value, indent=2))


@click.group(
    context_settings=dict(
        help_option_names=["-h", "--help"],
        token_normalize_func=lambda x: x.replace("_", "-"),
    ),
)
@click.version_option(image_inspector.__version__, "--version")
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False
    ),
    default="WARNING",
    show_default=True,
    envvar="IMAGE_INSPECTOR_LOG_LEVEL",
    metavar="LEVEL",
    help="Set the logging level. This can also be set via the "
    "IMAGE_INSPECTOR_LOG_LEVEL env var.",
)
def main(log_level: str) -> None:
    """Container image and supply-chain artifact inspection.

    Use each subcommand's `--help` option for details on each mode.
    """
    global tracer

    logging.basicConfig(
        format="%(message)s", level=getattr(logging, log_level.upper())
    )

    try:
        from opentelemetry import trace  # type: ignore[import-error]
        from opentelemetry.instrumentation import (
            auto_instrumentation,  # type: ignore[import-error]
        )

        auto_instrumentation.initialize()
        tracer = trace.get_tracer(__name__)
    except ImportError:
        logging.debug("OpenTelemetry not installed. Tracing is disabled.")
        tracer = NoOpTracer()
    except Exception as e:
        logging.error(
            f"Failed to initialize OpenTelemetry auto instrumentation: {e}"
        )
        sys.exit(1)


@main.command(name="inspect")
@_image_argument
@_verbose_option
@_insecure_option
@_tls_verify_option
@_timeout_option
@_max_workers_option
def _inspect(
    image: str,
    verbose: bool,
    insecure: bool,
    tls_verify: bool,
    timeout: float,
    max_workers: int,
) -> None:
    """Inspects an image and lists everything attached to it.

    The image is resolved to its digest and, for multi-platform images, to
    its platform manifests. Signatures, SBOMs, attestations, VEX documents and
    vulnerability scans are then discovered through the OCI Referrers API,
    the referrers tag schema, cosign `.sig`/`.att` tags and Docker BuildKit
    attestation manifests. The result is printed as JSON.
    """
    with tracer.start_as_current_span("Inspect") as span:
        span.set_attribute("image_inspector.image", image)
        try:
            result = _config(
                verbose, insecure, tls_verify, timeout, max_workers
            ).inspect(image)
            span.set_attribute(
                "image_inspector.referrers", len(result.referrers)
            )
            _echo_json(result.to_dict())
        except Exception as err:
            click.echo(f"Inspection failed with error: {err}", err=True)
            sys.exit(1)


@main.command(name="referrers")
@_image_argument
@click.option(
    "--type",
    "category",
    type=click.Choice([c.value for c in Category]),
    help="Only list referrers of this type.",
)
@_verbose_option
@_insecure_option
@_tls_verify_option
@_timeout_option
@_max_workers_option
def _referrers(
    image: str,
    category: str | None,
    verbose: bool,
    insecure: bool,
    tls_verify: bool,
    timeout: float,
    max_workers: int,
) -> None:
    """Lists the referrers of an image as JSON."""
    with tracer.start_as_current_span("Referrers") as span:
        span.set_attribute("image_inspector.image", image)
        try:
            found = _config(
                verbose, insecure, tls_verify, timeout, max_workers
            ).discover(image)
        except Exception as err:
            click.echo(f"Discovery failed with error: {err}", err=True)
            sys.exit(1)

        if category is not None:
            found = [r for r in found if r.category == Category(category)]
        _echo_json([r.to_dict() for r in found])


@main.command(name="sbom")
@_repository_argument
@_digest_argument
@click.option(
    "--output",
    "-o",
    type=pathlib.Path,
    metavar="OUTPUT_PATH",
    help="Write the SBOM to this file instead of standard output.",
)
@_insecure_option
@_tls_verify_option
@_timeout_option
def _sbom(
    repository: str,
    digest: str,
    output: pathlib.Path | None,
    insecure: bool,
    tls_verify: bool,
    timeout: float,
) -> None:
    """Fetches an SBOM attached to an image.

    DIGEST is either the digest of an attestation manifest, in which case its
    first SBOM layer is used, or the digest of the SBOM layer itself. In-toto
    statements, DSSE envelopes and Sigstore bundles are unwrapped.
    """
    with tracer.start_as_current_span("SBOM") as span:
        span.set_attribute("image_inspector.repository", repository)
        span.set_attribute("image_inspector.digest", digest)
        try:
            content = _config(
                False, insecure, tls_verify, timeout
            ).fetch_sbom(repository, digest)
            if output is not None:
                output.parent.mkdir(parents=True, exist_ok=True)
                output.write_bytes(content)
                click.echo(f"SBOM written to {output}")
            else:
                click.echo(content.decode("utf-8", errors="replace"))
        except Exception as err:
            click.echo(f"Fetching SBOM failed with error: {err}", err=True)
            sys.exit(1)


@main.command(name="vex")
@_repository_argument
@_digest_argument
@_insecure_option
@_tls_verify_option
@_timeout_option
def _vex(
    repository: str,
    digest: str,
    insecure: bool,
    tls_verify: bool,
    timeout: float,
) -> None:
    """Fetches and parses an OpenVEX document attached to an image."""
    with tracer.start_as_current_span("VEX") as span:
        span.set_attribute("image_inspector.repository", repository)
        span.set_attribute("image_inspector.digest", digest)
        try:
            document = _config(
                False, insecure, tls_verify, timeout
            ).fetch_vex(repository, digest)
            _echo_json(document.to_dict())
        except Exception as err:
            click.echo(f"Fetching VEX failed with error: {err}", err=True)
            sys.exit(1)


@main.command(name="tags")
@_repository_argument
@_insecure_option
@_tls_verify_option
@_timeout_option
def _tags(
    repository: str,
    insecure: bool,
    tls_verify: bool,
    timeout: float,
) -> None:
    """Lists the tags of a repository."""
    try:
        tags = _config(False, insecure, tls_verify, timeout).list_tags(
            repository
        )
    except Exception as err:
        click.echo(f"Listing tags failed with error: {err}", err=True)
        sys.exit(1)
    _echo_json(tags)

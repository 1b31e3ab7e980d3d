# ci_workflow.py
# Rust workspace CI: formatting, clippy and the nextest suite.
from __future__ import annotations

from ciflow.dsl import cache, job, matrix, retry, sh, workflow

RUST_CACHE = cache(
    "rust",
    key_files=["Cargo.lock", "**/Cargo.toml", "rust-toolchain.toml"],
    paths=["target"],
    save_if_ref="refs/heads/main",
)


def workflow_def():
    return workflow(
        "CI",
        job(
            "cargo fmt",
            sh("Install Rust toolchain", "rustup component add rustfmt", retry=retry(3, base_delay=2.0)),
            sh("rustfmt", "cargo fmt --all --check"),
            runs_on="ubuntu-latest",
        ),
        job(
            "cargo clippy",
            sh("Install Rust toolchain", "rustup component add clippy", retry=retry(3, base_delay=2.0)),
            sh(
                "Clippy",
                "cargo clippy --workspace --all-targets --all-features --locked -- -D warnings",
                cache=RUST_CACHE,
            ),
            runs_on="ubuntu-latest",
        ),
        # Large runners; the os label comes from the matrix.
        job(
            "cargo test | ${{ matrix.os }}",
            sh("Install Rust toolchain", "rustup show"),
            sh("Install cargo nextest", "cargo install cargo-nextest --locked", retry=retry(3, base_delay=5.0)),
            sh(
                "Tests",
                "cargo nextest run --all --all-features --status-level skip "
                "--failure-output immediate-final --no-fail-fast -j 12",
            ),
            runs_on="${{ matrix.os }}-large",
            matrix=matrix(os=["ubuntu-latest"]),
            caches=[RUST_CACHE],
        ),
        on={"push": {"branches": ["main"]}, "pull_request": None, "workflow_dispatch": None},
        concurrency="${{ github.workflow }}-${{ github.ref_name }}-${{ github.event.pull_request.number || github.sha }}",
        cancel_in_progress=True,
        env={
            "CARGO_INCREMENTAL": 0,
            "CARGO_NET_RETRY": 10,
            "CARGO_TERM_COLOR": "always",
            "RUSTUP_MAX_RETRIES": 10,
            "PYTHON_VERSION": "3.12",
        },
    )


WORKFLOW = workflow_def()

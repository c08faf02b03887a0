# relci_pipelines.py
from relci import CARGO_CACHES, caches, checkout, pipeline, sh, template
from relci.publish.release import GitHubRelease
from relci.publish.repos import FormulaRepository, TapRepository

REPO = "wez/wezterm"
REPO_URL = f"https://github.com/{REPO}.git"

RELEASE_FILES = ["wezterm-*.deb", "wezterm-*.xz", "wezterm-*.tar.gz"]


def cargo(cmd: str) -> str:
    # rustup installs into $HOME, which each job gets fresh
    return f'. "$HOME/.cargo/env" && {cmd}'


def rust_steps(sudo: str):
    return [
        sh("Install Rust",
           "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs"
           " | sh -s -- -y --profile minimal --default-toolchain stable --component rustfmt"),
        caches(*CARGO_CACHES),
        sh("Install System Deps", f"{sudo}./get-deps"),
        sh("Build (Release mode)", cargo("cargo build --all --release")),
        sh("Test (Release mode)", cargo("cargo test --all --release")),
        sh("Package", cargo("bash ci/deploy.sh")),
    ]


def ubuntu16():
    return template(
        "ubuntu16",
        sh("Update APT", "sudo -n apt update"),
        sh("Install git", "sudo -n apt-get install -y git"),
        checkout(),
        rust_steps("sudo -n "),
        sh("Build AppImage", "bash ci/appimage.sh"),
        publish=[
            GitHubRelease(REPO, RELEASE_FILES + ["*.AppImage", "*.zsync"]),
            FormulaRepository(
                "wezterm-bin",
                template="PKGBUILD",
                author_name="wez",
                author_email="wez@wezfurlong.org",
            ),
            TapRepository(
                "wez/homebrew-wezterm-linuxbrew",
                template="wezterm-linuxbrew.rb",
                formula_path="Formula/wezterm.rb",
            ),
        ],
    )


def ubuntu20():
    return template(
        "ubuntu20.04",
        sh("set APT to non-interactive",
           "echo 'debconf debconf/frontend select Noninteractive' | debconf-set-selections"),
        sh("Update APT", "apt update"),
        sh("Install git", "apt-get install -y git"),
        sh("Install curl", "apt-get install -y curl"),
        checkout(),
        rust_steps(""),
        image="ubuntu:20.04",
        publish=[GitHubRelease(REPO, RELEASE_FILES)],
    )


def pipelines():
    return [
        pipeline("ubuntu16_tag", ubuntu16(), on_tags=["20*"], repository=REPO_URL),
        pipeline("ubuntu20.04_tag", ubuntu20(), on_tags=["20*"], repository=REPO_URL),
    ]

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from stageci.ui.console import Console, set_console

# Rust toolchain pipeline: four jobs sharing one anchored template.
RUST_PIPELINE = textwrap.dedent(
    """
    stages:
      - test
      - build
      - deploy

    variables:
      RUST_BACKTRACE: "1"
      CARGO_HOME: $CI_PROJECT_DIR/cargo

    cache:
      key: $CI_BUILD_STAGE-$CI_BUILD_REF_NAME
      paths:
        - $HOME/.cargo
        - cargo/
        - target/

    .install_libsodium_template: &install_libsodium
      - curl --location --output libsodium18.deb http://archive.example/libsodium18.deb
      - sudo dpkg -i libsodium18.deb

    .cargo_build_template: &cargo_build
      stage: build
      before_script: *install_libsodium
      script:
        - cargo test --verbose --jobs 1
        - cargo build --verbose --jobs 1
        - cargo doc
      artifacts:
        paths:
        - target/debug
        - target/doc
        name: "${CI_JOB_STAGE}-${CI_BUILD_NAME}"
        expire_in: 1 week
      tags:
        - docker
        - linux
      only:
        - master
      except:
        - /test.*/

    1.21.0:tox:
      image: rustdocker/rust:1.21.0
      <<: *cargo_build

    stable:tox:
      image: rustdocker/rust:stable
      <<: *cargo_build

    beta:tox:
      image: rustdocker/rust:beta
      <<: *cargo_build

    nightly:tox:
      image: rustdocker/rust:nightly
      <<: *cargo_build
    """
)

# Same pipeline written with `extends` and a matrix axis.
RUST_MATRIX_PIPELINE = textwrap.dedent(
    """
    stages: [test, build, deploy]

    cache:
      key: $CI_BUILD_STAGE-$CI_BUILD_REF_NAME
      paths: [target/]

    .cargo_build:
      stage: build
      script:
        - cargo build
      only: [master]
      except: [/test.*/]

    tox:
      extends: .cargo_build
      matrix:
        image:
          - rustdocker/rust:1.21.0
          - rustdocker/rust:stable
          - rustdocker/rust:beta
          - rustdocker/rust:nightly
    """
)


@pytest.fixture(autouse=True)
def fresh_console():
    set_console(Console())
    yield
    set_console(Console())


@pytest.fixture
def write_pipeline(tmp_path: Path):
    def _write(text: str, name: str = ".stageci.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    return _write

#   Copyright 2024 - present The abundmc Developers
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.
import logging

import numpy as np
import pytest

from tests.models import simple_data, simulated_data


@pytest.fixture(scope="function", autouse=False)
def seeded_test():
    np.random.seed(20160911)


@pytest.fixture
def rng():
    return np.random.default_rng(20160911)


@pytest.fixture
def data():
    return simple_data()


@pytest.fixture(scope="module")
def sim():
    return simulated_data()


@pytest.fixture
def caplog_info(caplog):
    caplog.set_level(logging.INFO, logger="abundmc")
    return caplog

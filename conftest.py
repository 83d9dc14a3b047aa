# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT

from absl import flags


def pytest_configure(config):
    # absltest.TestCase helpers (e.g. create_tempdir) read absl flags, which
    # are only parsed by absltest.main(); parse defaults when run via pytest.
    if not flags.FLAGS.is_parsed():
        flags.FLAGS.mark_as_parsed()

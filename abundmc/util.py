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
from collections import namedtuple
from collections.abc import Sequence

import numpy as np

__all__ = [
    "RandomSeed",
    "RandomGenerator",
    "get_random_generator",
    "get_rngs_per_chain",
]

RandomSeed = None | int | Sequence[int] | np.ndarray
RandomGenerator = RandomSeed | np.random.Generator | np.random.BitGenerator

RandomGeneratorState = namedtuple("RandomGeneratorState", ["bit_generator_state", "seed_seq_state"])


def get_state_from_generator(
    rng: np.random.Generator | np.random.BitGenerator,
) -> RandomGeneratorState:
    assert isinstance(rng, (np.random.Generator | np.random.BitGenerator))
    bit_gen: np.random.BitGenerator = (
        rng.bit_generator if isinstance(rng, np.random.Generator) else rng
    )

    return RandomGeneratorState(
        bit_generator_state=bit_gen.state,
        seed_seq_state=bit_gen.seed_seq.state,  # type: ignore[attr-defined]
    )


def random_generator_from_state(state: RandomGeneratorState) -> np.random.Generator:
    seed_seq = np.random.SeedSequence(**state.seed_seq_state)
    bit_generator_class = getattr(np.random, state.bit_generator_state["bit_generator"])
    bit_generator = bit_generator_class(seed_seq)
    bit_generator.state = state.bit_generator_state
    return np.random.Generator(bit_generator)


def get_random_generator(
    seed: RandomGenerator | np.random.RandomState = None, copy: bool = True
) -> np.random.Generator:
    """Build a :py:class:`~numpy.random.Generator` object from a suitable seed.

    Parameters
    ----------
    seed : None | int | Sequence[int] | numpy.random.Generator | numpy.random.BitGenerator
        A suitable seed to use to generate the :py:class:`~numpy.random.Generator` object.
        For more details on suitable seeds, refer to :py:func:`numpy.random.default_rng`.
    copy : bool
        Boolean flag that indicates whether to copy the seed object before feeding
        it to :py:func:`numpy.random.default_rng`. If `copy` is `False`, and the seed
        object is a ``Generator``, that same object is returned.

    Returns
    -------
    rng : numpy.random.Generator

    Raises
    ------
    TypeError:
        If the supplied ``seed`` is a :py:class:`~numpy.random.RandomState` object. Legacy
        ``RandomState`` objects can not spawn independent streams for the chains.
    """
    if isinstance(seed, np.random.RandomState):
        raise TypeError(
            "Cannot create a random Generator from a RandomState object. "
            "Please provide a random seed, BitGenerator or Generator instead."
        )
    if copy:
        # default_rng returns the very same Generator (or wraps the very same
        # BitGenerator), so rebuild it from its state instead.
        if isinstance(seed, np.random.Generator | np.random.BitGenerator):
            return random_generator_from_state(get_state_from_generator(seed))
    return np.random.default_rng(seed)


def get_rngs_per_chain(random_seed: RandomGenerator, chains: int) -> list[np.random.Generator]:
    """Obtain one independent random Generator per chain.

    1. If the input is a list, tuple or array with as many entries as chains, each
       entry seeds one chain.
    2. Otherwise the input seeds a parent Generator whose ``spawn`` provides
       statistically independent child streams, one per chain.

    The result depends only on ``random_seed`` and ``chains``, never on how the
    chains are later distributed over processes.
    """
    if isinstance(random_seed, int) and random_seed == -1:
        random_seed = None
    if isinstance(random_seed, list | tuple):
        if len(random_seed) != chains:
            raise ValueError(
                f"Number of seeds ({len(random_seed)}) does not match the number of chains ({chains})."
            )
        return [get_random_generator(seed) for seed in random_seed]
    return list(get_random_generator(random_seed).spawn(chains))

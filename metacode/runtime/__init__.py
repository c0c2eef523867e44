"""
metacode runtime — capture computations once, run them live or emit them as code.

| Layer                      | Purpose                                          |
<--------------------------- + ------------------------------------------------>
| **Quoting**                | Function bodies → comment-carrying quoted blocks |
| **Captures**               | Memoized values and meta-mode handles            |
| **Deparse rules**          | Plain values → canonical literal code            |
| **Unquote resolution**     | ``uq(...)`` markers → literals or references     |
| **Expansion context**      | Deduplicated, ordered programs and substitution  |
| **Analysis**               | NetworkX dependency graphs, Graphviz export      |
| **Ledger**                 | Script hashes and signed provenance records      |
"""

from . import core as _core
from . import quoting as _quoting
from . import captures as _captures
from . import deparsing as _deparsing
from . import resolver as _resolver
from . import expansion as _expansion
from . import analysis as _analysis
from . import crypto as _crypto
from . import ledger as _ledger
from .cli import main, parse_args
from ..constants import KEY_FILE, LOGBOOK_FILE, PUB_FILE

from .core import *
from .quoting import *
from .captures import *
from .deparsing import *
from .resolver import *
from .expansion import *
from .analysis import *
from .crypto import *
from .ledger import *

__all__ = []
for module in (_core, _quoting, _captures, _deparsing, _resolver, _expansion, _analysis, _crypto, _ledger):
    __all__.extend(getattr(module, '__all__', []))
__all__ += ['main', 'parse_args', 'KEY_FILE', 'LOGBOOK_FILE', 'PUB_FILE']
__all__ = list(dict.fromkeys(__all__))

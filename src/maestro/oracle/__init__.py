from maestro.oracle.base import Oracle, OracleError, OracleProcessError, OracleTimeoutError
from maestro.oracle.claude import ClaudeCodeOracle
from maestro.oracle.decode import OracleDecodeError, decode_reply, extract_json_object
from maestro.oracle.openai_compat import OpenAICompatibleOracle
from maestro.oracle.resilient import ResilientOracle, RetryPolicy

__all__ = [
    "ClaudeCodeOracle",
    "OpenAICompatibleOracle",
    "Oracle",
    "OracleDecodeError",
    "OracleError",
    "OracleProcessError",
    "OracleTimeoutError",
    "ResilientOracle",
    "RetryPolicy",
    "decode_reply",
    "extract_json_object",
]

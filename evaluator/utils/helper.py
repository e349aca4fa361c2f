import json
import random
import time
from datetime import datetime, timezone
from decimal import Decimal
from botocore.exceptions import ClientError
from botocore.config import Config
import boto3
from constants import AWS_REGION

# read_timeout: Maximum time to wait for Bedrock to return a scoring response
# connect_timeout: Maximum time to wait for connection to Bedrock
bedrock_config = Config(
    read_timeout=180,
    connect_timeout=10,
    retries={'max_attempts': 0}  # We handle retries manually in bedrock_converse()
)
_bedrock = None

# Amazon Nova Pro pricing (AWS Bedrock on-demand, us-east-1)
BEDROCK_PRICING = {
    "amazon.nova-pro-v1:0": {
        "input_per_1k": 0.0008,
        "output_per_1k": 0.0032,
        "cache_read_per_1k": 0.0002,
        "cache_write_per_1k": 0.0
    }
}


def _bedrock_client():
    global _bedrock
    if _bedrock is None:
        _bedrock = boto3.client("bedrock-runtime", region_name=AWS_REGION, config=bedrock_config)
    return _bedrock


def calculate_bedrock_cost(usage: dict, model_id: str = "amazon.nova-pro-v1:0") -> dict:
    """
    Calculate AWS Bedrock API cost from token usage.

    Args:
        usage: Usage dict from Bedrock response with token counts
        model_id: Model identifier for pricing lookup

    Returns:
        Dict with cost breakdown and total
    """
    pricing = BEDROCK_PRICING.get(model_id, BEDROCK_PRICING["amazon.nova-pro-v1:0"])

    input_tokens = usage.get("inputTokens", 0)
    output_tokens = usage.get("outputTokens", 0)
    cache_read_tokens = usage.get("cacheReadInputTokens", 0)
    cache_write_tokens = usage.get("cacheWriteInputTokens", 0)

    input_cost = (input_tokens / 1000) * pricing["input_per_1k"]
    output_cost = (output_tokens / 1000) * pricing["output_per_1k"]
    cache_read_cost = (cache_read_tokens / 1000) * pricing["cache_read_per_1k"]
    cache_write_cost = (cache_write_tokens / 1000) * pricing["cache_write_per_1k"]

    total_cost = input_cost + output_cost + cache_read_cost + cache_write_cost

    return {
        "input_cost": round(input_cost, 6),
        "output_cost": round(output_cost, 6),
        "cache_read_cost": round(cache_read_cost, 6),
        "cache_write_cost": round(cache_write_cost, 6),
        "total_cost": round(total_cost, 6)
    }


def log_json(level: str, msg: str, **kwargs):
    """
    Print a single JSON line for CloudWatch logs.
    Usage: log_json("INFO", "SCORING_OK", jobName=..., latency_ms=..., criteria=...)
    """
    try:
        payload = {
            "level": level.upper(),
            "message": msg,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        if kwargs:
            payload.update(kwargs)
        print(json.dumps(payload, ensure_ascii=False, default=str))
    except Exception:
        # never fail logging
        print(f"{level.upper()} {msg} {kwargs}")


def log_token_usage(resp: dict, model_id: str, **kwargs):
    """Log token counts and estimated cost for one Converse response"""
    usage = resp.get("usage", {}) or {}
    cost = calculate_bedrock_cost(usage, model_id)
    log_json("INFO", "BEDROCK_TOKEN_USAGE",
             modelId=model_id,
             input_tokens=usage.get("inputTokens", 0),
             output_tokens=usage.get("outputTokens", 0),
             total_cost=cost["total_cost"],
             **kwargs)
    return cost


def _should_retry_bedrock_error(err: Exception) -> bool:
    if isinstance(err, ClientError):
        code = err.response.get("Error", {}).get("Code", "")
        return code in {
            "ThrottlingException",
            "ModelTimeoutException",
            "ServiceUnavailableException",
            "InternalServerException",
            "ModelNotReadyException",
        }
    # Fallback: no retry
    return False


def bedrock_converse(
    model_id: str,
    messages: list,
    system: str = None,
    max_tokens: int = 4096,
    temperature: float = 0.0,
    tools: list = None,
    tool_choice: dict = None,
    tries: int = 5,
    base: float = 0.6,
    max_sleep: float = 6.0
):
    """
    Invoke Bedrock using Converse API with exponential backoff + jitter.

    Args:
        model_id: Bedrock model ID
        messages: List of message dicts with 'role' and 'content'
        system: Optional system prompt - string or list of system blocks
        max_tokens: Maximum tokens to generate
        temperature: Sampling temperature
        tools: Optional list of tool definitions for structured output
        tool_choice: Optional tool choice configuration (e.g. {"tool": {"name": "tool_name"}})
        tries: Number of retry attempts
        base: Base delay for exponential backoff
        max_sleep: Maximum sleep duration

    Returns:
        Tuple of (response_dict, latency_ms)
        response_dict contains: output, stopReason, usage, etc.
    """
    last_err = None
    for attempt in range(1, tries + 1):
        t0 = time.perf_counter()
        try:
            request_params = {
                "modelId": model_id,
                "messages": messages,
                "inferenceConfig": {
                    "maxTokens": max_tokens,
                    "temperature": temperature,
                }
            }

            if system:
                if isinstance(system, str):
                    request_params["system"] = [{"text": system}]
                elif isinstance(system, list):
                    request_params["system"] = system
                else:
                    raise ValueError(f"system must be str or list, got {type(system)}")

            if tools:
                request_params["toolConfig"] = {"tools": tools}

                if tool_choice:
                    request_params["toolConfig"]["toolChoice"] = tool_choice
                elif len(tools) == 1:
                    # If only one tool, force its use for guaranteed structured output
                    request_params["toolConfig"]["toolChoice"] = {
                        "tool": {"name": tools[0]["toolSpec"]["name"]}
                    }

            resp = _bedrock_client().converse(**request_params)
            latency_ms = round((time.perf_counter() - t0) * 1000, 2)
            return resp, latency_ms

        except ValueError:
            raise
        except Exception as e:
            last_err = e
            if not _should_retry_bedrock_error(e) and not isinstance(e, TimeoutError):
                # If not clearly retryable, only retry first time as grace
                if attempt >= 2:
                    break
            if attempt == tries:
                break
            sleep_s = min(max_sleep, base * (2 ** (attempt - 1))) * (0.7 + 0.6 * random.random())
            time.sleep(sleep_s)
    raise last_err


def extract_tool_input(resp: dict, tool_name: str):
    """Return the input of the first toolUse block named tool_name, or None"""
    content = resp.get("output", {}).get("message", {}).get("content", []) or []
    for block in content:
        tool_use = block.get("toolUse") if isinstance(block, dict) else None
        if tool_use and tool_use.get("name") == tool_name:
            return tool_use.get("input")
    return None


def parse_stringified_fields(data: dict, fields: list, job_name: str, context: str = "") -> dict:
    """
    Parse tool output fields that the model returned as JSON strings.

    Converse tool use occasionally returns array fields as a JSON string rather
    than a parsed array. Fields that fail to parse are left untouched so that
    schema validation reports them.
    """
    for field in fields:
        value = data.get(field)
        if not isinstance(value, str):
            continue

        stripped = value.strip()
        if not stripped:
            data[field] = []
            continue

        try:
            data[field] = json.loads(stripped)
            log_json("WARNING", "FIELD_WAS_STRING",
                     jobName=job_name,
                     field=field,
                     context=context or "unknown")
        except json.JSONDecodeError as e:
            log_json("ERROR", "FIELD_PARSE_FAILED",
                     jobName=job_name,
                     field=field,
                     context=context or "unknown",
                     error=str(e),
                     raw_value_preview=stripped[:500])

    return data


def to_ddb_numbers(obj):
    """
    Recursively convert all Python floats in obj to Decimal for DynamoDB.
    """
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, dict):
        return {k: to_ddb_numbers(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_ddb_numbers(v) for v in obj]
    return obj


def from_ddb_numbers(obj):
    """Convert Decimals read back from DynamoDB into int or float"""
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    if isinstance(obj, dict):
        return {k: from_ddb_numbers(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [from_ddb_numbers(v) for v in obj]
    return obj


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

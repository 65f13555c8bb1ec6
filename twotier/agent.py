"""Remote agent protocol for TwoTier.

The provisioned Windows hosts are driven through a small, fixed catalogue of
operations rather than arbitrary script text.  Each operation is a named
PowerShell body with declared parameters.  Arguments travel as JSON literals
inside a ``-EncodedCommand`` script; bulk payloads (file segments, secrets)
travel on stdin so they never appear on a command line.

Every script answers with a single JSON line::

    ["success", <data>, <protocol version>]
    ["fail", [<exception type>, <category>, <message>], <protocol version>]
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from textwrap import dedent
from typing import Any

from twotier.errors import TwoTierError

logger = logging.getLogger(__name__)

AGENT_PROTOCOL_VERSION = 1

STDIN_BASE64 = "base64"
STDIN_TEXT = "text"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RemoteAgentError(TwoTierError):
    """Raised when an operation ran on the remote host and reported failure."""

    def __init__(self, type_name: str, category: str, message: str) -> None:
        """Initialise with the remote exception's type, category and message."""
        super().__init__(f"{type_name}: {message}")
        self.type_name = type_name
        self.category = category
        self.message = message


class AgentCommunicationError(TwoTierError):
    """Raised when the remote side did not answer with a valid envelope."""


# ---------------------------------------------------------------------------
# Operation catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentOperation:
    """One entry of the remote agent's operation catalogue."""

    name: str
    parameters: tuple[str, ...]
    body: str
    stdin: str | None = None


_OPERATIONS: dict[str, AgentOperation] = {}


def _register(name: str, parameters: tuple[str, ...], body: str, stdin: str | None = None) -> None:
    _OPERATIONS[name] = AgentOperation(name, parameters, dedent(body).strip(), stdin)


# language=PowerShell
_register("prepare_destination", ("path",), r"""
    $Resolved = $ExecutionContext.SessionState.Path.GetUnresolvedProviderPathFromPSPath($Path)
    if (Test-Path -LiteralPath $Resolved -PathType Leaf) {
        Remove-Item -LiteralPath $Resolved -Force
    }
    $Parent = Split-Path -Parent $Resolved
    if ($Parent -and -not (Test-Path -LiteralPath $Parent)) {
        New-Item -ItemType Directory -Path $Parent -Force | Out-Null
    }
    $Resolved
    """)

# language=PowerShell
_register("append_bytes", ("path",), r"""
    $Data = [Convert]::FromBase64String([Console]::In.ReadToEnd())
    $Stream = [System.IO.File]::Open($Path, [System.IO.FileMode]::Append, [System.IO.FileAccess]::Write)
    try {
        $Stream.Write($Data, 0, $Data.Length)
    } finally {
        $Stream.Close()
    }
    $Data.Length
    """, stdin=STDIN_BASE64)

# language=PowerShell
_register("stat_file", ("path",), r"""
    $Item = Get-Item -LiteralPath $Path
    @{
        path = $Item.FullName
        size = $Item.Length
        modified = $Item.LastWriteTimeUtc.ToString('o')
    }
    """)

# language=PowerShell
_register("ensure_firewall_rule", ("name", "port", "protocol"), r"""
    $Existing = Get-NetFirewallRule -DisplayName $Name -ErrorAction SilentlyContinue
    if (-not $Existing) {
        New-NetFirewallRule -DisplayName $Name -Direction Inbound -Action Allow `
            -Protocol $Protocol -LocalPort $Port | Out-Null
    }
    @{
        name = $Name
        created = (-not $Existing)
    }
    """)

# language=PowerShell
_register("enable_sql_mixed_mode", ("instance",), r"""
    $Names = Get-ItemProperty -Path 'HKLM:\SOFTWARE\Microsoft\Microsoft SQL Server\Instance Names\SQL'
    $InstanceId = $Names.$Instance
    if (-not $InstanceId) {
        throw "SQL Server instance '$Instance' is not installed"
    }
    $Key = "HKLM:\SOFTWARE\Microsoft\Microsoft SQL Server\$InstanceId\MSSQLServer"
    $Previous = (Get-ItemProperty -Path $Key -Name LoginMode).LoginMode
    if ($Previous -ne 2) {
        Set-ItemProperty -Path $Key -Name LoginMode -Value 2
        if ($Instance -eq 'MSSQLSERVER') { $Service = 'MSSQLSERVER' } else { $Service = 'MSSQL$' + $Instance }
        Restart-Service -Name $Service -Force
    }
    $Previous
    """)

# language=PowerShell
_register("create_sql_login", ("instance", "login"), r"""
    $Password = [Console]::In.ReadToEnd().TrimEnd("`r`n".ToCharArray())
    if ($Instance -eq 'MSSQLSERVER') { $Server = '.' } else { $Server = '.\' + $Instance }
    $Literal = $Login.Replace("'", "''")
    $Bracketed = $Login.Replace(']', ']]')
    $Secret = $Password.Replace("'", "''")
    $Query = "IF NOT EXISTS (SELECT name FROM sys.server_principals WHERE name = N'$Literal') " +
        "BEGIN CREATE LOGIN [$Bracketed] WITH PASSWORD = N'$Secret', CHECK_POLICY = OFF; " +
        "ALTER SERVER ROLE dbcreator ADD MEMBER [$Bracketed]; END"
    & sqlcmd -S $Server -E -b -Q $Query | Out-Null
    if ($LASTEXITCODE -ne 0) {
        throw "sqlcmd exited with code $LASTEXITCODE"
    }
    $Login
    """, stdin=STDIN_TEXT)

# language=PowerShell
_register("install_webpi_product", ("installer", "product", "parameters_file"), r"""
    $Arguments = @('/Install', "/Application:$Product@$ParametersFile", '/AcceptEULA', '/SuppressReboot')
    $Process = Start-Process -FilePath $Installer -ArgumentList $Arguments -Wait -PassThru -NoNewWindow
    $Process.ExitCode
    """)

# language=PowerShell
_register("remove_file", ("path",), r"""
    $Resolved = $ExecutionContext.SessionState.Path.GetUnresolvedProviderPathFromPSPath($Path)
    $Existed = Test-Path -LiteralPath $Resolved -PathType Leaf
    if ($Existed) {
        Remove-Item -LiteralPath $Resolved -Force
    }
    $Existed
    """)


def get_operation(name: str) -> AgentOperation:
    """Return the catalogue entry for *name*.

    Raises:
        ValueError: The operation is not part of the protocol.
    """
    try:
        return _OPERATIONS[name]
    except KeyError:
        raise ValueError(f"Unknown agent operation: {name!r}") from None


def operation_names() -> list[str]:
    """Return the names of all operations, sorted."""
    return sorted(_OPERATIONS)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _ps_name(parameter: str) -> str:
    return "".join(part.title() for part in parameter.split("_"))


def _indent(string: str, spaces: str = "    ") -> str:
    return string.replace("\n", "\n" + spaces)


def render_script(name: str, arguments: dict[str, Any]) -> str:
    """Return the full PowerShell script for operation *name*.

    Raises:
        ValueError: Unknown operation, or arguments that do not match the
            operation's declared parameters exactly.
    """
    op = get_operation(name)
    missing = set(op.parameters) - set(arguments)
    extra = set(arguments) - set(op.parameters)
    if missing or extra:
        raise ValueError(
            f"Operation {name!r} takes {list(op.parameters)}; "
            f"missing {sorted(missing)}, unexpected {sorted(extra)}"
        )

    parameters = ", ".join("$" + _ps_name(p) for p in op.parameters)
    call = ["Invoke-AgentOperation"]
    for parameter in op.parameters:
        value = json.dumps(arguments[parameter]).replace("'", "''")
        call.append(f"-{_ps_name(parameter)}:(ConvertFrom-Json '{value}')")
    invocation = _indent(" `\n".join(call), " " * 8)

    # language=PowerShell
    script = f"""
$ProgressPreference = 'SilentlyContinue'
$ErrorActionPreference = 'Stop'
$AgentProtocolVersion = {AGENT_PROTOCOL_VERSION}
function Invoke-AgentOperation ({parameters}) {{
    {_indent(op.body)}
}}
try {{
    $Result = {invocation}
    ConvertTo-Json -Compress -Depth 4 @( 'success', $Result, $AgentProtocolVersion )
}} catch {{
    $ExceptionInfo = @(
        $_.Exception.GetType().FullName,
        $_.CategoryInfo.Category.ToString(),
        $_.Exception.Message
    )
    ConvertTo-Json -Compress @( 'fail', $ExceptionInfo, $AgentProtocolVersion )
}}
"""
    return script.strip()


def build_command(name: str, arguments: dict[str, Any]) -> str:
    """Return the command line that runs operation *name* on the remote host."""
    script = render_script(name, arguments)
    logger.debug("Agent operation %s (v%d) with %s", name, AGENT_PROTOCOL_VERSION, sorted(arguments))
    encoded = base64.b64encode(script.encode("utf_16_le")).decode("ascii")
    return " ".join([
        "PowerShell",
        "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Unrestricted",
        "-EncodedCommand", encoded,
    ])


def decode_command(command_line: str) -> str:
    """Return the script text embedded in a command line from :func:`build_command`."""
    *_, encoded = command_line.split()
    return base64.b64decode(encoded.encode("ascii")).decode("utf_16_le")


def encode_stdin(name: str, payload: bytes | bytearray | memoryview | str | None) -> bytes | None:
    """Encode *payload* the way operation *name* expects to read it.

    Raises:
        ValueError: A payload was given to an operation that reads none, or
            an operation that reads stdin got no payload.
    """
    op = get_operation(name)
    if op.stdin is None:
        if payload is not None:
            raise ValueError(f"Operation {name!r} does not read stdin")
        return None
    if payload is None:
        raise ValueError(f"Operation {name!r} requires a stdin payload")
    if op.stdin == STDIN_BASE64:
        if isinstance(payload, str):
            raise ValueError(f"Operation {name!r} expects bytes on stdin")
        return base64.b64encode(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_outcome(stdout: bytes, stderr: bytes = b"") -> Any:
    """Decode the JSON envelope printed by an operation and return its data.

    Raises:
        AgentCommunicationError: Empty or undecodable output, or a protocol
            version mismatch.
        RemoteAgentError: The operation reported failure.
    """
    text = stdout.decode("utf-8", errors="replace").strip()
    if not text:
        raise AgentCommunicationError(
            "Empty stdout; "
            "PowerShell couldn't run on the remote host; "
            "stderr:\n"
            + stderr.decode("utf-8", errors="replace"))
    last_line = text.splitlines()[-1].lstrip("\ufeff")
    try:
        outcome, data, version = json.loads(last_line)
    except (ValueError, TypeError) as exc:
        raise AgentCommunicationError(f"Cannot decode stdout: {exc}") from exc
    if version != AGENT_PROTOCOL_VERSION:
        raise AgentCommunicationError(
            f"Remote agent protocol version {version!r} does not match {AGENT_PROTOCOL_VERSION}"
        )
    if outcome == "success":
        return data
    if outcome == "fail":
        if not isinstance(data, list) or len(data) != 3:
            raise AgentCommunicationError(f"Malformed failure details: {data!r}")
        raise RemoteAgentError(*data)
    raise AgentCommunicationError(f"Unknown outcome {outcome!r}")

"""ctypes bindings for the Win32 and NT calls used by the Windows backend.

Nothing here touches ``ctypes.WinDLL`` until a library is first used, so
the module imports on any platform. Raw addresses never leave this module
and ``windows.py``: the rest of the package sees decoded strings and ints.
"""

import ctypes
import struct
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from witr.errors import ParseError, PermissionDeniedError, ProcessNotFoundError

PROCESS_QUERY_INFORMATION = 0x0400
PROCESS_VM_READ = 0x0010
PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
TH32CS_SNAPPROCESS = 0x00000002
ERROR_ACCESS_DENIED = 5
ERROR_INVALID_PARAMETER = 87  # no such PID
PROCESS_BASIC_INFORMATION_CLASS = 0

MAX_PATH = 260
IMAGE_NAME_BUFFER = 1024
# UNICODE_STRING lengths are 16-bit, so no single legitimate read is larger.
MAX_REMOTE_READ = 64 * 1024

_FILETIME_UNIX_EPOCH = 116444736000000000  # 100ns ticks from 1601 to 1970
INVALID_HANDLE_VALUE = ctypes.c_void_p(-1).value


class FILETIME(ctypes.Structure):
    _fields_ = [("dwLowDateTime", ctypes.c_uint32), ("dwHighDateTime", ctypes.c_uint32)]

    def to_datetime(self) -> datetime | None:
        ticks = (self.dwHighDateTime << 32) | self.dwLowDateTime
        if ticks == 0:
            return None
        return datetime.fromtimestamp((ticks - _FILETIME_UNIX_EPOCH) / 10_000_000).astimezone()


class PROCESS_BASIC_INFORMATION(ctypes.Structure):
    _fields_ = [
        ("ExitStatus", ctypes.c_size_t),
        ("PebBaseAddress", ctypes.c_size_t),
        ("AffinityMask", ctypes.c_size_t),
        ("BasePriority", ctypes.c_size_t),
        ("UniqueProcessId", ctypes.c_size_t),
        ("InheritedFromUniqueProcessId", ctypes.c_size_t),
    ]


class PROCESSENTRY32W(ctypes.Structure):
    _fields_ = [
        ("dwSize", ctypes.c_uint32),
        ("cntUsage", ctypes.c_uint32),
        ("th32ProcessID", ctypes.c_uint32),
        ("th32DefaultHeapID", ctypes.c_size_t),
        ("th32ModuleID", ctypes.c_uint32),
        ("cntThreads", ctypes.c_uint32),
        ("th32ParentProcessID", ctypes.c_uint32),
        ("pcPriClassBase", ctypes.c_long),
        ("dwFlags", ctypes.c_uint32),
        ("szExeFile", ctypes.c_wchar * MAX_PATH),
    ]


@dataclass(slots=True, frozen=True)
class SnapshotEntry:
    """One row of a Toolhelp process snapshot."""

    pid: int
    ppid: int
    exe_file: str


@dataclass(slots=True, frozen=True)
class UnicodeStringRef:
    """Length (in bytes) and remote buffer address of a UNICODE_STRING."""

    length: int
    buffer: int


@dataclass(slots=True, frozen=True)
class ProcessParametersLayout:
    """Offsets into the PEB and RTL_USER_PROCESS_PARAMETERS for one bitness."""

    pointer_size: int
    peb_parameters_offset: int
    current_directory_offset: int
    image_path_offset: int
    command_line_offset: int
    size: int

    @classmethod
    def for_pointer_size(cls, pointer_size: int) -> "ProcessParametersLayout":
        if pointer_size == 8:
            return LAYOUT_64
        if pointer_size == 4:
            return LAYOUT_32
        raise ParseError(f"unsupported pointer size {pointer_size}")

    @property
    def unicode_string_format(self) -> str:
        # USHORT Length, USHORT MaximumLength, (padding), PWSTR Buffer
        return "<HH4xQ" if self.pointer_size == 8 else "<HHI"

    def unicode_string_at(self, block: bytes, offset: int) -> UnicodeStringRef:
        fmt = self.unicode_string_format
        end = offset + struct.calcsize(fmt)
        if end > len(block):
            raise ParseError(f"UNICODE_STRING at {offset:#x} past end of block")
        length, _maximum, buffer = struct.unpack(fmt, block[offset:end])
        return UnicodeStringRef(length=length, buffer=buffer)


LAYOUT_64 = ProcessParametersLayout(
    pointer_size=8,
    peb_parameters_offset=0x20,
    current_directory_offset=0x38,
    image_path_offset=0x60,
    command_line_offset=0x70,
    size=0x88,
)
LAYOUT_32 = ProcessParametersLayout(
    pointer_size=4,
    peb_parameters_offset=0x10,
    current_directory_offset=0x24,
    image_path_offset=0x38,
    command_line_offset=0x40,
    size=0x4C,
)


class RemoteMemory(ABC):
    """
    Reads from another process's address space.

    ``read`` is the only way in: it validates the address and size before
    every read and returns exactly ``size`` bytes or raises.
    """

    def __init__(self, pointer_size: int) -> None:
        self.pointer_size = pointer_size

    def read(self, address: int, size: int) -> bytes:
        if address <= 0:
            raise ParseError("remote read from null address")
        if size <= 0 or size > MAX_REMOTE_READ:
            raise ParseError(f"remote read size {size} out of range")
        data = self._read(address, size)
        if len(data) != size:
            raise PermissionDeniedError(f"short remote read at {address:#x}: {len(data)} of {size} bytes")
        return data

    def read_pointer(self, address: int) -> int:
        fmt = "<Q" if self.pointer_size == 8 else "<I"
        (value,) = struct.unpack(fmt, self.read(address, self.pointer_size))
        return value

    def read_unicode_string(self, ref: UnicodeStringRef) -> str:
        """Decode a length-prefixed UTF-16 buffer; "" when its length is 0."""
        if ref.length == 0:
            return ""
        if ref.length % 2:
            raise ParseError(f"odd UNICODE_STRING length {ref.length}")
        return self.read(ref.buffer, ref.length).decode("utf-16-le", errors="replace")

    @abstractmethod
    def _read(self, address: int, size: int) -> bytes:
        """Read up to ``size`` bytes at ``address``."""


def _load_windll(name: str) -> Any:
    return ctypes.WinDLL(name, use_last_error=True)


def _declare_kernel32(lib: Any) -> None:
    handle = ctypes.c_void_p
    lib.OpenProcess.argtypes = [ctypes.c_uint32, ctypes.c_int, ctypes.c_uint32]
    lib.OpenProcess.restype = handle
    lib.CloseHandle.argtypes = [handle]
    lib.CloseHandle.restype = ctypes.c_int
    lib.ReadProcessMemory.argtypes = [
        handle,
        ctypes.c_void_p,
        ctypes.c_void_p,
        ctypes.c_size_t,
        ctypes.POINTER(ctypes.c_size_t),
    ]
    lib.ReadProcessMemory.restype = ctypes.c_int
    lib.GetProcessTimes.argtypes = [handle] + [ctypes.POINTER(FILETIME)] * 4
    lib.GetProcessTimes.restype = ctypes.c_int
    lib.QueryFullProcessImageNameW.argtypes = [
        handle,
        ctypes.c_uint32,
        ctypes.c_wchar_p,
        ctypes.POINTER(ctypes.c_uint32),
    ]
    lib.QueryFullProcessImageNameW.restype = ctypes.c_int
    lib.CreateToolhelp32Snapshot.argtypes = [ctypes.c_uint32, ctypes.c_uint32]
    lib.CreateToolhelp32Snapshot.restype = handle
    lib.Process32FirstW.argtypes = [handle, ctypes.POINTER(PROCESSENTRY32W)]
    lib.Process32FirstW.restype = ctypes.c_int
    lib.Process32NextW.argtypes = [handle, ctypes.POINTER(PROCESSENTRY32W)]
    lib.Process32NextW.restype = ctypes.c_int


def _declare_ntdll(lib: Any) -> None:
    lib.NtQueryInformationProcess.argtypes = [
        ctypes.c_void_p,
        ctypes.c_uint32,
        ctypes.c_void_p,
        ctypes.c_uint32,
        ctypes.POINTER(ctypes.c_uint32),
    ]
    lib.NtQueryInformationProcess.restype = ctypes.c_long


_DECLARATIONS: dict[str, Callable[[Any], None]] = {
    "kernel32": _declare_kernel32,
    "ntdll": _declare_ntdll,
}


class NativeLibraries:
    """
    Load-once holder for the system DLLs.

    Libraries are loaded on first use under a lock and never unloaded. One
    instance is created at startup and passed to the Windows backend.
    """

    def __init__(self, loader: Callable[[str], Any] = _load_windll) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._libs: dict[str, Any] = {}

    def get(self, name: str) -> Any:
        lib = self._libs.get(name)
        if lib is None:
            with self._lock:
                lib = self._libs.get(name)
                if lib is None:
                    lib = self._loader(name)
                    declare = _DECLARATIONS.get(name)
                    if declare is not None:
                        declare(lib)
                    self._libs[name] = lib
        return lib

    @property
    def kernel32(self) -> Any:
        return self.get("kernel32")

    @property
    def ntdll(self) -> Any:
        return self.get("ntdll")

    def loaded(self) -> list[str]:
        return sorted(self._libs)


class ProcessMemory(RemoteMemory):
    """RemoteMemory backed by ReadProcessMemory on an open handle."""

    def __init__(self, kernel32: Any, handle: int) -> None:
        super().__init__(ctypes.sizeof(ctypes.c_void_p))
        self._kernel32 = kernel32
        self._handle = handle

    def _read(self, address: int, size: int) -> bytes:
        buffer = ctypes.create_string_buffer(size)
        read = ctypes.c_size_t(0)
        ok = self._kernel32.ReadProcessMemory(
            self._handle, ctypes.c_void_p(address), buffer, size, ctypes.byref(read)
        )
        if not ok:
            raise PermissionDeniedError(
                f"ReadProcessMemory at {address:#x} failed (winerror {ctypes.get_last_error()})"
            )
        return buffer.raw[: read.value]


class Win32Api:
    """Thin, exception-raising wrappers over the Win32 calls the tiers need."""

    def __init__(self, libraries: NativeLibraries) -> None:
        self._libs = libraries

    @property
    def pointer_size(self) -> int:
        return ctypes.sizeof(ctypes.c_void_p)

    @contextmanager
    def open_process(self, pid: int, access: int) -> Iterator[int]:
        """Open a process handle that is closed on every exit path."""
        kernel32 = self._libs.kernel32
        handle = kernel32.OpenProcess(access, False, pid)
        if not handle:
            error = ctypes.get_last_error()
            if error == ERROR_INVALID_PARAMETER:
                raise ProcessNotFoundError(pid)
            if error == ERROR_ACCESS_DENIED:
                raise PermissionDeniedError(f"OpenProcess({pid}, {access:#x}): access denied")
            raise PermissionDeniedError(f"OpenProcess({pid}, {access:#x}) failed (winerror {error})")
        try:
            yield handle
        finally:
            kernel32.CloseHandle(handle)

    def basic_information(self, handle: int) -> tuple[int, int]:
        """Return (parent PID, PEB base address)."""
        info = PROCESS_BASIC_INFORMATION()
        returned = ctypes.c_uint32(0)
        status = self._libs.ntdll.NtQueryInformationProcess(
            handle,
            PROCESS_BASIC_INFORMATION_CLASS,
            ctypes.byref(info),
            ctypes.sizeof(info),
            ctypes.byref(returned),
        )
        if status != 0:
            raise PermissionDeniedError(
                f"NtQueryInformationProcess failed with status {status & 0xFFFFFFFF:#x}"
            )
        return info.InheritedFromUniqueProcessId, info.PebBaseAddress

    def remote_memory(self, handle: int) -> RemoteMemory:
        return ProcessMemory(self._libs.kernel32, handle)

    def start_time(self, handle: int) -> datetime | None:
        creation, exited, kernel, user = FILETIME(), FILETIME(), FILETIME(), FILETIME()
        ok = self._libs.kernel32.GetProcessTimes(
            handle, ctypes.byref(creation), ctypes.byref(exited), ctypes.byref(kernel), ctypes.byref(user)
        )
        if not ok:
            return None
        return creation.to_datetime()

    def image_name(self, handle: int) -> str:
        buffer = ctypes.create_unicode_buffer(IMAGE_NAME_BUFFER)
        size = ctypes.c_uint32(IMAGE_NAME_BUFFER)
        if not self._libs.kernel32.QueryFullProcessImageNameW(handle, 0, buffer, ctypes.byref(size)):
            return ""
        return buffer[: size.value]

    @contextmanager
    def snapshot(self) -> Iterator[Iterator[SnapshotEntry]]:
        """Toolhelp process snapshot, closed when the block exits."""
        kernel32 = self._libs.kernel32
        handle = kernel32.CreateToolhelp32Snapshot(TH32CS_SNAPPROCESS, 0)
        if not handle or handle == INVALID_HANDLE_VALUE:
            raise PermissionDeniedError(
                f"CreateToolhelp32Snapshot failed (winerror {ctypes.get_last_error()})"
            )
        try:
            yield self._entries(handle)
        finally:
            kernel32.CloseHandle(handle)

    def _entries(self, handle: int) -> Iterator[SnapshotEntry]:
        kernel32 = self._libs.kernel32
        entry = PROCESSENTRY32W()
        entry.dwSize = ctypes.sizeof(PROCESSENTRY32W)
        ok = kernel32.Process32FirstW(handle, ctypes.byref(entry))
        while ok:
            yield SnapshotEntry(
                pid=entry.th32ProcessID,
                ppid=entry.th32ParentProcessID,
                exe_file=entry.szExeFile,
            )
            ok = kernel32.Process32NextW(handle, ctypes.byref(entry))

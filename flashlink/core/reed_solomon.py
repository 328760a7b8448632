"""
FlashLink Reed-Solomon Codec
RS(255, 223) over GF(2^8), used by the FEC adapter.
Blocks are shortened: a block carrying m < 223 data bytes is sent as
m data bytes + 32 parity bytes, the missing message symbols being zero.
"""

import numpy as np
from typing import List, Optional, Sequence, Tuple


class GaloisField:
    """GF(2^8) arithmetic with primitive polynomial x^8 + x^4 + x^3 + x^2 + 1."""

    def __init__(self, prim_poly: int = 0x11D):
        self.prim_poly = prim_poly
        self.exp_table = np.zeros(512, dtype=int)
        self.log_table = np.zeros(256, dtype=int)
        x = 1
        for i in range(255):
            self.exp_table[i] = x
            self.log_table[x] = i
            x <<= 1
            if x & 0x100:
                x ^= self.prim_poly
        self.exp_table[255:510] = self.exp_table[:255]

    def multiply(self, a: int, b: int) -> int:
        if a == 0 or b == 0:
            return 0
        return int(self.exp_table[self.log_table[a] + self.log_table[b]])

    def divide(self, a: int, b: int) -> int:
        if b == 0:
            raise ZeroDivisionError("division by zero in GF(256)")
        if a == 0:
            return 0
        return int(self.exp_table[(self.log_table[a] - self.log_table[b]) % 255])

    def inverse(self, a: int) -> int:
        if a == 0:
            raise ZeroDivisionError("inverse of zero in GF(256)")
        return int(self.exp_table[255 - self.log_table[a]])

    def alpha(self, exponent: int) -> int:
        return int(self.exp_table[exponent % 255])

    def poly_multiply(self, p1: Sequence[int], p2: Sequence[int]) -> List[int]:
        result = [0] * (len(p1) + len(p2) - 1)
        for i, c1 in enumerate(p1):
            for j, c2 in enumerate(p2):
                result[i + j] ^= self.multiply(c1, c2)
        return result

    def poly_eval(self, poly: Sequence[int], x: int) -> int:
        """Horner evaluation, highest-degree coefficient first."""
        result = 0
        for coeff in poly:
            result = self.multiply(result, x) ^ coeff
        return result


class ReedSolomonCodec:
    """
    RS(n, k) systematic codec.
    - k data symbols + (n - k) parity symbols per block
    - corrects up to (n - k) / 2 symbol errors per block
    """

    def __init__(self, n: int = 255, k: int = 223):
        if not 0 < k < n <= 255:
            raise ValueError("need 0 < k < n <= 255")
        self.n = n
        self.k = k
        self.nsym = n - k
        self.t = self.nsym // 2
        self.gf = GaloisField()
        self.generator = [1]
        for i in range(self.nsym):
            self.generator = self.gf.poly_multiply(self.generator, [1, self.gf.alpha(i)])

    # ── encoding ─────────────────────────────────────────────

    def _parity(self, message: List[int]) -> List[int]:
        remainder = message + [0] * self.nsym
        for i in range(self.k):
            coeff = remainder[i]
            if coeff:
                for j in range(1, len(self.generator)):
                    remainder[i + j] ^= self.gf.multiply(self.generator[j], coeff)
        return remainder[self.k:]

    def encode_block(self, data: bytes) -> bytes:
        """Up to k data bytes -> data + parity (shortened)."""
        if len(data) > self.k:
            raise ValueError(f"block holds at most {self.k} data bytes")
        message = list(data) + [0] * (self.k - len(data))
        return bytes(data) + bytes(self._parity(message))

    def encode(self, data: bytes) -> List[bytes]:
        """Split data into k-byte blocks and encode each one."""
        data = bytes(data)
        if not data:
            return [self.encode_block(b'')]
        return [self.encode_block(data[i:i + self.k]) for i in range(0, len(data), self.k)]

    # ── decoding ─────────────────────────────────────────────

    def decode_block(self, block: bytes) -> Optional[Tuple[bytes, int]]:
        """
        Returns (data, symbols corrected), or None when the block is
        uncorrectable.
        """
        m = len(block) - self.nsym
        if not 0 <= m <= self.k:
            return None
        received = list(block[:m]) + [0] * (self.k - m) + list(block[m:])
        result = self._correct(received)
        if result is None:
            return None
        codeword, corrected = result
        # a "correction" inside the shortened region means miscorrection
        if any(codeword[m:self.k]):
            return None
        return bytes(codeword[:m]), corrected

    def decode(self, blocks: Sequence[bytes]) -> Optional[Tuple[bytes, int]]:
        out = []
        total = 0
        for block in blocks:
            result = self.decode_block(block)
            if result is None:
                return None
            out.append(result[0])
            total += result[1]
        return b''.join(out), total

    def _correct(self, received: List[int]) -> Optional[Tuple[List[int], int]]:
        syndromes = [self.gf.poly_eval(received, self.gf.alpha(i)) for i in range(self.nsym)]
        if not any(syndromes):
            return received, 0

        locator = self._error_locator(syndromes)
        if locator is None:
            return None
        positions = self._error_positions(locator)
        if positions is None:
            return None
        magnitudes = self._error_values(syndromes, positions)
        if magnitudes is None:
            return None

        codeword = list(received)
        for pos, mag in zip(positions, magnitudes):
            codeword[pos] ^= mag

        if any(self.gf.poly_eval(codeword, self.gf.alpha(i)) for i in range(self.nsym)):
            return None
        return codeword, len(positions)

    def _error_locator(self, syndromes: List[int]) -> Optional[List[int]]:
        """Berlekamp-Massey."""
        size = len(syndromes) + 1
        C = [1] + [0] * (size - 1)
        B = [1] + [0] * (size - 1)
        L, m, b = 0, 1, 1

        for step, s in enumerate(syndromes):
            d = s
            for i in range(1, L + 1):
                d ^= self.gf.multiply(C[i], syndromes[step - i])
            if d == 0:
                m += 1
                continue

            coeff = self.gf.divide(d, b)
            previous = list(C)
            for i in range(m, size):
                if B[i - m]:
                    C[i] ^= self.gf.multiply(coeff, B[i - m])

            if 2 * L <= step:
                L = step + 1 - L
                B = previous
                b = d
                m = 1
            else:
                m += 1

        if L > self.t:
            return None
        return C[:L + 1]

    def _error_positions(self, locator: List[int]) -> Optional[List[int]]:
        """Chien search over all n positions."""
        positions = [self.n - 1 - i for i in range(self.n)
                     if self.gf.poly_eval(locator, self.gf.alpha(i)) == 0]
        if len(positions) != len(locator) - 1:
            return None
        return positions

    def _error_values(self, syndromes: List[int], positions: List[int]) -> Optional[List[int]]:
        """
        Solve S_i = sum_j e_j * alpha^((n-1-p_j) * i) for the magnitudes e_j
        by Gaussian elimination over GF(256).
        """
        v = len(positions)
        A = [[self.gf.alpha((self.n - 1 - p) * i) for p in positions] for i in range(v)]
        S = list(syndromes[:v])

        for col in range(v):
            pivot = next((r for r in range(col, v) if A[r][col]), None)
            if pivot is None:
                return None
            A[col], A[pivot] = A[pivot], A[col]
            S[col], S[pivot] = S[pivot], S[col]

            inv = self.gf.inverse(A[col][col])
            A[col] = [self.gf.multiply(a, inv) for a in A[col]]
            S[col] = self.gf.multiply(S[col], inv)

            for row in range(v):
                factor = A[row][col]
                if row != col and factor:
                    A[row] = [a ^ self.gf.multiply(factor, c) for a, c in zip(A[row], A[col])]
                    S[row] ^= self.gf.multiply(factor, S[col])
        return S

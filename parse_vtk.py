import numpy as np
import argparse
from fe_utils import ELEMENT_INFO


class VtkParser:
    """
    Parse the legacy ASCII unstructured grid .vtk written by fe_utils.to_vtk
    """

    def __init__(self, vtk_name):
        self.vtk_name = vtk_name
        self.title = None
        self.X = None
        self.conn = dict()
        self.nodal_sol = dict()
        self.nodal_vec = dict()
        self.nnodes = None
        self.nelems = None
        return

    def _line_to_list(self, line, dtype=float):
        """
        Convert a line of string to list of numbers

        Inputs:
            line: a line of text file
            dtype: python built-in data type

        Return:
            vals: list of values, if the line is not numeric, return None
        """
        vals = line.split()
        try:
            return [dtype(v) for v in vals]
        except ValueError:
            return None

    def _read_values(self, fh, count, dtype=float):
        """
        Read <count> numbers that may span multiple lines

        Inputs:
            fh: vtk file handle
            count: number of values to read

        Return:
            vals: list of values
        """
        vals = []
        while len(vals) < count:
            line = fh.readline()
            if not line:
                raise ValueError(f"{self.vtk_name}: unexpected end of file")
            if not line.strip():
                continue
            row = self._line_to_list(line, dtype=dtype)
            if row is None:
                raise ValueError(f"{self.vtk_name}: expected numbers, got {line!r}")
            vals.extend(row)
        return vals

    def _parse_cells(self, fh, nelems):
        """
        Get the cell connectivity lists, each line is "npts i0 i1 ..."
        """
        cells = []
        while len(cells) < nelems:
            line = fh.readline()
            if not line:
                raise ValueError(f"{self.vtk_name}: unexpected end of file")
            row = self._line_to_list(line, dtype=int)
            if not row:
                continue
            if row[0] != len(row) - 1:
                raise ValueError(f"{self.vtk_name}: malformed cell line {line!r}")
            cells.append(row[1:])
        return cells

    def parse(self):
        """
        Parse the vtk file.

        Return:
            X: nodal locations, (nnodes, 3)
            conn: dictionary {etype: (nelems, nnode) array}
            nodal_sol: dictionary {name: (nnodes, ) array}
            nodal_vec: dictionary {name: (nnodes, 3) array}
        """
        vtk_types = {info["vtk_type"]: etype for etype, info in ELEMENT_INFO.items()}
        cells = []
        cell_types = []

        with open(self.vtk_name) as fh:
            header = fh.readline()
            if not header.startswith("# vtk DataFile"):
                raise ValueError(f"{self.vtk_name} is not a legacy vtk file")
            self.title = fh.readline().rstrip("\n")
            if fh.readline().strip() != "ASCII":
                raise ValueError(f"{self.vtk_name}: only ASCII files are supported")

            while True:
                line = fh.readline()
                if not line:
                    break
                words = line.split()
                if not words:
                    continue
                keyword = words[0]

                if keyword == "DATASET":
                    if words[1] != "UNSTRUCTURED_GRID":
                        raise ValueError(f"unsupported dataset {words[1]}")
                elif keyword == "POINTS":
                    self.nnodes = int(words[1])
                    self.X = np.array(self._read_values(fh, 3 * self.nnodes)).reshape(
                        -1, 3
                    )
                elif keyword == "CELLS":
                    self.nelems = int(words[1])
                    cells = self._parse_cells(fh, self.nelems)
                elif keyword == "CELL_TYPES":
                    cell_types = self._read_values(fh, int(words[1]), dtype=int)
                elif keyword == "POINT_DATA":
                    if int(words[1]) != self.nnodes:
                        raise ValueError(f"{self.vtk_name}: point data size mismatch")
                elif keyword == "SCALARS":
                    ncomp = int(words[3]) if len(words) > 3 else 1
                    lookup = fh.readline().split()
                    if not lookup or lookup[0] != "LOOKUP_TABLE":
                        raise ValueError(f"{self.vtk_name}: missing LOOKUP_TABLE")
                    vals = np.array(self._read_values(fh, ncomp * self.nnodes))
                    self.nodal_sol[words[1]] = (
                        vals if ncomp == 1 else vals.reshape(-1, ncomp)
                    )
                elif keyword == "VECTORS":
                    vals = self._read_values(fh, 3 * self.nnodes)
                    self.nodal_vec[words[1]] = np.array(vals).reshape(-1, 3)
                else:
                    raise ValueError(f"{self.vtk_name}: unknown section {keyword}")

        if len(cell_types) != len(cells):
            raise ValueError(f"{self.vtk_name}: CELLS and CELL_TYPES do not match")

        # Group cells by type
        conn = dict()
        for c, t in zip(cells, cell_types):
            if t not in vtk_types:
                raise ValueError(f"{self.vtk_name}: unsupported cell type {t}")
            conn.setdefault(vtk_types[t], []).append(c)
        self.conn = {key: np.array(val) for key, val in conn.items()}

        return self.X, self.conn, self.nodal_sol, self.nodal_vec


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("vtk", type=str, metavar="[vtk file]")
    args = p.parse_args()
    vtk_parser = VtkParser(args.vtk)
    X, conn, nodal_sol, nodal_vec = vtk_parser.parse()
    print(f"{vtk_parser.title}: {vtk_parser.nnodes} points, {vtk_parser.nelems} cells")
    for etype, c in conn.items():
        print(f"  {etype}: {len(c)}")
    for name, data in nodal_sol.items():
        print(f"  SCALARS {name}: min {data.min():.6e}, max {data.max():.6e}")
    for name, data in nodal_vec.items():
        print(f"  VECTORS {name}: max norm {np.linalg.norm(data, axis=1).max():.6e}")

import pandas as pd
import openpyxl
from openpyxl.styles import Font, Alignment, Border, Side, PatternFill
from openpyxl.utils import get_column_letter
import os
import re
import logging
import threading
import uuid
from datetime import datetime
from typing import Optional, Dict, List, Tuple


STUDENT_COLUMNS = {
    'roll_number': ['roll_number', 'rollnumber', 'roll', 'rollno', 'roll_no', 'regno', 'reg_no', 'register_number'],
    'name': ['name', 'student_name', 'full_name'],
    'email': ['email', 'email_id', 'mail'],
    'degree': ['degree', 'programme', 'program'],
    'branch': ['branch', 'department', 'dept'],
    'batch': ['batch', 'batch_year', 'year_of_joining'],
    'semester': ['semester', 'semester_number', 'sem'],
}

COURSE_COLUMNS = {
    'course_code': ['course_code', 'coursecode', 'code', 'subject_code'],
    'course_title': ['course_title', 'coursetitle', 'title', 'course_name', 'subject_name'],
    'category': ['category', 'course_category'],
    'type': ['type', 'course_type'],
    'lecture_hours': ['lecture_hours', 'lecturehours', 'l'],
    'tutorial_hours': ['tutorial_hours', 'tutorialhours', 't'],
    'practical_hours': ['practical_hours', 'practicalhours', 'p'],
    'experiential_hours': ['experiential_hours', 'experientialhours', 'e'],
    'total_contact_periods': ['total_contact_periods', 'totalcontactperiods', 'contact_periods'],
    'credits': ['credits', 'credit', 'c'],
    'min_mark': ['min_mark', 'minmark', 'min_marks'],
    'max_mark': ['max_mark', 'maxmark', 'max_marks'],
}

SEMESTER_NUMBER_COLUMNS = ['semester_number', 'semesternumber', 'semester', 'sem']
REGNO_COLUMNS = ['regno', 'reg_no', 'roll_number', 'rollnumber', 'rollno', 'register_number']
MARKS_COLUMNS = ['marks', 'mark', 'marks_obtained', 'score']

INVALID_SHEET_CHARS = re.compile(r'[\[\]:*?/\\]')


class ExcelHandler:
    def __init__(self, export_folder: str = 'exports'):
        self.logger = logging.getLogger(__name__)
        self.export_folder = export_folder
        self._lock = threading.Lock()

    def read_table(self, filepath: str) -> pd.DataFrame:
        """
        Read a CSV or Excel sheet with every cell as text.
        Legacy .xls workbooks go through xlrd, everything else through openpyxl.
        """
        ext = os.path.splitext(filepath)[1].lower()
        try:
            if ext == '.csv':
                df = pd.read_csv(filepath, dtype=str)
            else:
                df = pd.read_excel(filepath, dtype=str, engine='xlrd' if ext == '.xls' else 'openpyxl')
        except Exception as e:
            self.logger.error(f"Error reading {filepath}: {str(e)}")
            raise ValueError(f"Could not read the uploaded file: {str(e)}")
        df = df.dropna(how='all')
        return df.fillna('')

    def _normalize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        df.columns = [str(col).strip().lower().replace(' ', '_').replace('.', '') for col in df.columns]
        return df

    def _map_columns(self, df: pd.DataFrame, column_mappings: Dict[str, List[str]],
                     required: List[str]) -> Dict[str, str]:
        mapped_columns = {}
        for expected_col, possible_names in column_mappings.items():
            for possible_name in possible_names:
                if possible_name in df.columns:
                    mapped_columns[expected_col] = possible_name
                    break

        missing_columns = [col for col in required if col not in mapped_columns]
        if missing_columns:
            self.logger.error(f"Missing columns: {missing_columns}")
            raise ValueError(f"Missing columns: {', '.join(missing_columns)}")
        return mapped_columns

    def read_student_sheet(self, filepath: str) -> pd.DataFrame:
        """
        Read a student roster.
        Expected columns: Roll Number, Name, Degree, Branch, Batch (Email, Semester optional)
        """
        df = self._normalize_columns(self.read_table(filepath))
        mapped_columns = self._map_columns(df, STUDENT_COLUMNS,
                                           ['roll_number', 'name', 'degree', 'branch', 'batch'])

        result_df = pd.DataFrame()
        for standard_name in STUDENT_COLUMNS:
            if standard_name in mapped_columns:
                result_df[standard_name] = df[mapped_columns[standard_name]].astype(str).str.strip()
            else:
                result_df[standard_name] = ''

        result_df = result_df[(result_df['roll_number'] != '') & (result_df['name'] != '')].copy()
        result_df['roll_number'] = result_df['roll_number'].str.upper()

        # Remove duplicate roll numbers
        result_df = result_df.drop_duplicates(subset=['roll_number'], keep='first')
        return result_df.sort_values(['batch', 'branch', 'roll_number'])

    def read_course_sheet(self, filepath: str) -> List[Dict]:
        df = self._normalize_columns(self.read_table(filepath))
        mapped_columns = self._map_columns(df, COURSE_COLUMNS,
                                           ['course_code', 'course_title', 'category', 'type'])
        rows = []
        for _, record in df.iterrows():
            row = {}
            for standard_name, original_name in mapped_columns.items():
                row[standard_name] = str(record[original_name]).strip()
            rows.append(row)
        return rows

    def read_regulation_sheet(self, filepath: str) -> List[Dict]:
        """
        Read a regulation curriculum: the course sheet columns plus the semester number.
        The type column is optional here, it can be derived from the hours.
        """
        df = self._normalize_columns(self.read_table(filepath))
        column_mappings = dict(COURSE_COLUMNS, semester_number=SEMESTER_NUMBER_COLUMNS)
        mapped_columns = self._map_columns(df, column_mappings,
                                           ['course_code', 'course_title', 'category', 'semester_number'])
        rows = []
        for _, record in df.iterrows():
            rows.append({standard_name: str(record[original_name]).strip()
                         for standard_name, original_name in mapped_columns.items()})
        return rows

    def read_grade_sheet(self, filepath: str) -> Tuple[List[Tuple[str, str, str]], List[str]]:
        """
        Read a wide grade sheet: one regno column followed by one column per course code.

        Returns:
            Tuple of ((regno, course_code, raw_grade) cells, course codes in sheet order)
        """
        df = self.read_table(filepath)
        if df.columns.empty:
            raise ValueError('Grade sheet is empty')

        normalized = [str(col).strip().lower().replace(' ', '_').replace('.', '') for col in df.columns]
        regno_index = next((i for i, name in enumerate(normalized) if name in REGNO_COLUMNS), None)
        if regno_index is None:
            raise ValueError('Missing columns: regno')

        regno_column = df.columns[regno_index]
        course_columns = [col for col in df.columns if col != regno_column and not str(col).startswith('Unnamed')]
        course_codes = [str(col).strip().upper() for col in course_columns]

        cells = []
        for _, record in df.iterrows():
            regno = str(record[regno_column]).strip().upper()
            if not regno:
                continue
            for column, code in zip(course_columns, course_codes):
                cells.append((regno, code, str(record[column]).strip()))
        return cells, course_codes

    def read_marks_sheet(self, filepath: str) -> Tuple[List[Dict], List[Dict]]:
        """
        Read regno/marks rows for a single assessment tool.

        Returns:
            Tuple of (valid rows, skipped rows with a reason)
        """
        df = self._normalize_columns(self.read_table(filepath))
        mapped_columns = self._map_columns(df, {'regno': REGNO_COLUMNS, 'marks': MARKS_COLUMNS},
                                           ['regno', 'marks'])
        rows = []
        skipped = []
        for index, record in df.iterrows():
            regno = str(record[mapped_columns['regno']]).strip().upper()
            raw_marks = str(record[mapped_columns['marks']]).strip()
            if not regno:
                skipped.append({'row': int(index) + 2, 'reason': 'Missing regno'})
                continue
            try:
                marks = float(raw_marks)
            except ValueError:
                self.logger.warning(f"Skipping {regno}: marks '{raw_marks}' is not a number")
                skipped.append({'row': int(index) + 2, 'regno': regno, 'reason': 'Marks is not a number'})
                continue
            rows.append({'regno': regno, 'marksObtained': marks})
        return rows, skipped

    def to_csv(self, headers: List[str], rows: List[List]) -> str:
        return pd.DataFrame(rows, columns=headers).to_csv(index=False)

    def _sheet_title(self, title: str) -> str:
        return INVALID_SHEET_CHARS.sub('_', title)[:31] or 'Sheet'

    def _header_styles(self):
        border = Border(
            left=Side(style='thin'),
            right=Side(style='thin'),
            top=Side(style='thin'),
            bottom=Side(style='thin')
        )
        return Font(bold=True, size=12), border, Alignment(horizontal='center', vertical='center')

    def _export_name(self, prefix: str) -> str:
        # Unique per call so concurrent exports never share a file
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        return f"{prefix}_{timestamp}_{uuid.uuid4().hex[:8]}.xlsx"

    def _auto_width(self, ws, max_width: int = 50):
        for col_idx in range(1, ws.max_column + 1):
            column_letter = get_column_letter(col_idx)
            max_length = 0
            for row_idx in range(1, ws.max_row + 1):
                value = ws.cell(row=row_idx, column=col_idx).value
                if value is not None:
                    max_length = max(max_length, len(str(value)))
            ws.column_dimensions[column_letter].width = min(max_length + 2, max_width)

    def create_cbcs_workbook(self, cbcs_id: int, subjects: List[Dict], folder: str) -> str:
        """
        Build the allocation workbook for a CBCS, one sheet per subject.

        subjects: dicts with courseCode, courseName and staffs [{staffId, staffName}]
        Row 1 holds the subject, row 2 one staff header over two columns,
        row 3 the Regno / Student's Name pair under each staff.
        """
        wb = openpyxl.Workbook()
        wb.remove(wb.active)

        subject_fill = PatternFill(start_color="FFFFFF00", end_color="FFFFFF00", fill_type="solid")
        staff_fill = PatternFill(start_color="FFDDEBF7", end_color="FFDDEBF7", fill_type="solid")
        column_fill = PatternFill(start_color="FFFF7F66", end_color="FFFF7F66", fill_type="solid")
        header_font, border, center_alignment = self._header_styles()

        for subject in subjects:
            ws = wb.create_sheet(self._sheet_title(subject['courseCode']))
            staffs = subject.get('staffs') or []
            last_column = max(len(staffs) * 2, 2)

            ws.cell(row=1, column=1, value=f"Subject: {subject['courseCode']} - {subject['courseName']}")
            ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=last_column)
            ws.cell(row=1, column=1).font = Font(bold=True, size=14)
            ws.cell(row=1, column=1).fill = subject_fill
            ws.cell(row=1, column=1).alignment = center_alignment

            for index, staff in enumerate(staffs):
                column = index * 2 + 1
                cell = ws.cell(row=2, column=column, value=f"staffId:{staff['staffId']} | {staff['staffName']}")
                ws.merge_cells(start_row=2, start_column=column, end_row=2, end_column=column + 1)
                cell.font = header_font
                cell.fill = staff_fill
                cell.alignment = center_alignment

                for offset, header in enumerate(['Regno', "Student's Name"]):
                    header_cell = ws.cell(row=3, column=column + offset, value=header)
                    header_cell.font = Font(bold=True)
                    header_cell.fill = column_fill
                    header_cell.border = border
                    header_cell.alignment = center_alignment

                ws.column_dimensions[get_column_letter(column)].width = 15
                ws.column_dimensions[get_column_letter(column + 1)].width = 30

            ws.freeze_panes = 'A4'

        if not wb.sheetnames:
            wb.create_sheet('Allocation')

        os.makedirs(folder, exist_ok=True)
        filepath = os.path.join(folder, f"cbcs_allocation_{cbcs_id}.xlsx")
        wb.save(filepath)
        self.logger.info(f"Created CBCS workbook {filepath}")
        return filepath

    def _staff_column(self, ws, staff_id: int) -> Optional[int]:
        prefix = f"staffId:{staff_id} |"
        for col_idx in range(1, ws.max_column + 1):
            value = ws.cell(row=2, column=col_idx).value
            if isinstance(value, str) and value.startswith(prefix):
                return col_idx
        return None

    def append_allocations(self, filepath: str, entries: List[Dict]) -> int:
        """
        Write students under their staff column at the first empty row.

        entries: dicts with courseCode, staffId, regno and name
        Returns the number of students written.
        """
        written = 0
        with self._lock:
            wb = openpyxl.load_workbook(filepath)
            for entry in entries:
                title = self._sheet_title(entry['courseCode'])
                if title not in wb.sheetnames:
                    self.logger.warning(f"No sheet for course {entry['courseCode']} in {filepath}")
                    continue
                ws = wb[title]
                column = self._staff_column(ws, entry['staffId'])
                if column is None:
                    self.logger.warning(f"No column for staff {entry['staffId']} on sheet {title}")
                    continue

                row = 4
                while ws.cell(row=row, column=column).value not in (None, ''):
                    row += 1
                ws.cell(row=row, column=column, value=entry['regno'])
                ws.cell(row=row, column=column + 1, value=entry['name'])
                written += 1
            wb.save(filepath)
        return written

    def export_students(self, students: List[Dict]) -> str:
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Students"

        header_font, border, center_alignment = self._header_styles()
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        headers = ['Roll Number', 'Name', 'Email', 'Degree', 'Branch', 'Batch', 'Semester']
        for col, header in enumerate(headers, 1):
            cell = ws.cell(row=1, column=col, value=header)
            cell.font = Font(bold=True, size=12, color="FFFFFF")
            cell.fill = header_fill
            cell.border = border
            cell.alignment = center_alignment

        for row_num, student in enumerate(students, 2):
            values = [student.get('rollnumber'), student.get('name'), student.get('email'),
                      student.get('degree'), student.get('branch'), student.get('batch'),
                      student.get('semesterNumber')]
            for col, value in enumerate(values, 1):
                ws.cell(row=row_num, column=col, value=value).border = border

        self._auto_width(ws)
        os.makedirs(self.export_folder, exist_ok=True)
        filepath = os.path.join(self.export_folder, self._export_name('students_export'))
        wb.save(filepath)
        self.logger.info(f"Exported {len(students)} students to {filepath}")
        return filepath

    def export_attendance_report(self, title: str, courses: List[Dict], rows: List[Dict]) -> str:
        """
        Subject-wise attendance report.

        courses: dicts with courseId and courseCode, in column order
        rows: dicts with rollnumber, name and courses {courseId: {total, present, percentage}}
        """
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Attendance"

        header_font, border, center_alignment = self._header_styles()
        last_column = 2 + len(courses) * 3
        ws['A1'] = title
        ws['A1'].font = Font(bold=True, size=14)
        ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=last_column)

        headers = ['Roll Number', 'Name']
        for course in courses:
            headers += [f"{course['courseCode']} Present", f"{course['courseCode']} Total",
                        f"{course['courseCode']} %"]
        for col, header in enumerate(headers, 1):
            cell = ws.cell(row=3, column=col, value=header)
            cell.font = header_font
            cell.border = border
            cell.alignment = center_alignment

        low_fill = PatternFill(start_color="FFE6E6", end_color="FFE6E6", fill_type="solid")
        for row_num, row in enumerate(rows, 4):
            ws.cell(row=row_num, column=1, value=row['rollnumber']).border = border
            ws.cell(row=row_num, column=2, value=row['name']).border = border
            for index, course in enumerate(courses):
                summary = row['courses'].get(course['courseId'], {'total': 0, 'present': 0, 'percentage': 0})
                column = 3 + index * 3
                values = [summary['present'], summary['total'], summary['percentage']]
                for offset, value in enumerate(values):
                    cell = ws.cell(row=row_num, column=column + offset, value=value)
                    cell.border = border
                # Highlight shortage of attendance
                if summary['total'] and summary['percentage'] < 75:
                    ws.cell(row=row_num, column=column + 2).fill = low_fill

        self._auto_width(ws)
        os.makedirs(self.export_folder, exist_ok=True)
        filepath = os.path.join(self.export_folder, self._export_name('attendance_report'))
        wb.save(filepath)
        self.logger.info(f"Exported attendance report to {filepath}")
        return filepath

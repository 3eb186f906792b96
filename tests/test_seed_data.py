"""
Tests for the generated student roster and the demo data loader.
"""

import pandas as pd

from create_test_data import ROSTER_COLUMNS, generate_roster
from models import Course, Department, StaffCourse, Student, StudentCourse, Timetable, db
from seed_data import DEMO_PASSWORD, seed_demo


class TestGenerateRoster:
    def test_layout(self) -> None:
        df = generate_roster(count=3, branch='ece', batch='2024', semester=3, seed=7)

        assert list(df.columns) == ROSTER_COLUMNS
        assert list(df['Roll Number']) == ['24ECE001', '24ECE002', '24ECE003']
        assert df['Email'].iloc[0] == '24ece001@college.edu'
        assert set(df['Semester']) == {3}

    def test_seed_is_repeatable(self) -> None:
        first = generate_roster(count=5, seed=42)
        second = generate_roster(count=5, seed=42)
        assert list(first['Name']) == list(second['Name'])


class TestSeedDemo:
    def test_loads_demo_data(self, app, client) -> None:
        summary = seed_demo(student_count=6, batch_year=2022)

        assert summary['courses'] == 5
        assert summary['studentsCreated'] == 6
        assert Timetable.query.count() == 7
        assert StaffCourse.query.count() == 3
        assert [s.roll_number for s in Student.query.order_by(Student.roll_number).all()][:2] == [
            '22CSE001', '22CSE002']

        login = client.post('/api/auth/login', json={'email': summary['staffEmail'], 'password': DEMO_PASSWORD})
        assert login.status_code == 200

    def test_core_courses_alternate_sections(self, app) -> None:
        seed_demo(student_count=4, batch_year=2022)
        course = Course.query.filter_by(course_code='CS3501').first()

        placements = [row.section_id for row in
                      StudentCourse.query.filter_by(course_id=course.id).order_by(StudentCourse.roll_number).all()]
        first, second = [section.id for section in course.sections]
        assert placements == [first, second, first, second]
        assert StudentCourse.query.filter_by(course_id=Course.query.filter_by(
            course_code='CS3551').first().id).count() == 0

    def test_running_twice_reuses_rows(self, app) -> None:
        seed_demo(student_count=4, batch_year=2022)
        again = seed_demo(student_count=4, batch_year=2022)

        assert again['studentsCreated'] == 0
        assert Student.query.count() == 4
        assert Course.query.count() == 5
        assert StudentCourse.query.count() == 12


class TestCommands:
    def test_init_db(self, app) -> None:
        db.session.query(Department).delete()
        db.session.commit()

        result = app.test_cli_runner().invoke(args=['init-db'])

        assert 'Database initialised' in result.output
        assert Department.query.count() > 0

    def test_generate_roster(self, app, tmp_path) -> None:
        output = str(tmp_path / 'roster.xlsx')

        result = app.test_cli_runner().invoke(args=['generate-roster', '--count', '4', '--branch', 'IT',
                                                    '--output', output])

        assert result.exit_code == 0
        assert 'Total Students: 4' in result.output
        df = pd.read_excel(output)
        assert list(df['Roll Number']) == ['23IT001', '23IT002', '23IT003', '23IT004']
